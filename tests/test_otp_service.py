import pytest

from errors import ExpiredError, MismatchError, NotFoundError, RateLimitError, TransportError, ValidationError
from utils import otp_store
from utils.otp_service import OtpService
from utils.otp_store import OtpStore


@pytest.fixture
def service(session_factory, clock, outbox):
    store = OtpStore(session_factory, ttl_seconds=300, resend_cooldown_seconds=60, now=clock)
    return OtpService(store, session_factory, sender=outbox.send, now=clock)


def test_send_delivers_code_by_email(service, outbox):
    service.send("a@x.com")

    mail = outbox.sent[-1]
    assert mail["to"] == "a@x.com"
    assert mail["subject"] == "Unified Campus Verification Code"
    code = outbox.last_code("a@x.com")
    assert code in mail["html"]
    assert "expires in 5 minutes" in mail["html"]


def test_send_requires_email(service):
    with pytest.raises(ValidationError, match="Email is required"):
        service.send("  ")


def test_resend_is_throttled_until_cooldown(service, clock, outbox):
    service.send("a@x.com")
    clock.advance(10)

    with pytest.raises(RateLimitError) as exc:
        service.send("a@x.com")
    assert exc.value.retry_after == 50
    assert len(outbox.sent) == 1

    clock.advance(50)
    service.send("a@x.com")
    assert len(outbox.sent) == 2


def test_transport_failure_keeps_code_usable(service, outbox, monkeypatch):
    monkeypatch.setattr(otp_store, "generate_code", lambda: "123456")
    outbox.fail = True

    with pytest.raises(TransportError, match="Failed to send OTP"):
        service.send("a@x.com")

    assert service.status("a@x.com")["can_resend"] is True
    service.verify("a@x.com", "123456")
    assert service.is_verified("a@x.com")


def test_verify_is_single_use(service, outbox):
    service.send("a@x.com")
    code = outbox.last_code("a@x.com")

    service.verify("a@x.com", code)
    with pytest.raises(NotFoundError, match="No OTP request found") as exc:
        service.verify("a@x.com", code)
    assert exc.value.status_code == 400


def test_verify_maps_failures_to_messages(service, clock, outbox):
    with pytest.raises(NotFoundError):
        service.verify("a@x.com", "123456")

    service.send("a@x.com")
    code = outbox.last_code("a@x.com")
    wrong = "000000" if code != "000000" else "999999"
    with pytest.raises(MismatchError, match="Invalid Code"):
        service.verify("a@x.com", wrong)

    clock.advance(301)
    with pytest.raises(ExpiredError, match="OTP has expired"):
        service.verify("a@x.com", code)
    assert not service.is_verified("a@x.com")


def test_verify_requires_code(service):
    with pytest.raises(ValidationError, match="OTP is required"):
        service.verify("a@x.com", "")


def test_status_reports_countdown(service, clock):
    assert service.status("a@x.com") == {"remaining_seconds": 0, "can_resend": True, "resend_in": 0}

    service.send("a@x.com")
    clock.advance(15)

    assert service.status("a@x.com") == {"remaining_seconds": 285, "can_resend": False, "resend_in": 45}
