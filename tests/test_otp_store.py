import pytest

from models import OtpRecord
from utils import otp_store
from utils.otp_store import OtpReason, OtpStore


@pytest.fixture
def store(session_factory, clock):
    return OtpStore(session_factory, ttl_seconds=300, resend_cooldown_seconds=60, now=clock)


def test_issue_returns_six_digit_code(store):
    code = store.issue("a@x.com")

    assert len(code) == 6
    assert code.isdigit()


def test_code_may_have_leading_zeros(store, monkeypatch):
    monkeypatch.setattr(otp_store.secrets, "randbelow", lambda n: 42)

    assert store.issue("a@x.com") == "000042"


def test_correct_code_is_valid_exactly_once(store):
    code = store.issue("a@x.com")

    assert store.check("a@x.com", code) == (True, OtpReason.OK)
    assert store.check("a@x.com", code) == (False, OtpReason.NOT_FOUND)


def test_check_without_record(store):
    assert store.check("nobody@x.com", "123456").reason == OtpReason.NOT_FOUND


def test_expired_code_is_rejected_even_when_correct(store, clock):
    code = store.issue("a@x.com")
    clock.advance(301)

    assert store.check("a@x.com", code) == (False, OtpReason.EXPIRED)
    assert store.check("a@x.com", "000000").reason == OtpReason.EXPIRED


def test_code_still_valid_at_the_boundary(store, clock):
    code = store.issue("a@x.com")
    clock.advance(300)

    assert store.check("a@x.com", code).valid


def test_mismatch_allows_retry(store):
    code = store.issue("a@x.com")
    wrong = "111111" if code != "111111" else "222222"

    assert store.check("a@x.com", wrong) == (False, OtpReason.MISMATCH)
    assert store.check("a@x.com", code).valid


def test_new_issue_overwrites_previous_code(store, monkeypatch):
    codes = iter(["111111", "222222"])
    monkeypatch.setattr(otp_store, "generate_code", lambda: next(codes))
    store.issue("a@x.com")
    store.issue("a@x.com")

    assert store.check("a@x.com", "111111").reason == OtpReason.MISMATCH
    assert store.check("a@x.com", "222222").valid


def test_email_is_normalized(store):
    code = store.issue("  A@X.com ")

    assert store.check("a@x.com", code).valid


def test_remaining_seconds_counts_down_and_never_goes_negative(store, clock):
    assert store.remaining_seconds("a@x.com") == 0

    store.issue("a@x.com")
    assert store.remaining_seconds("a@x.com") == 300

    clock.advance(120.5)
    assert store.remaining_seconds("a@x.com") == 179

    clock.advance(1000)
    assert store.remaining_seconds("a@x.com") == 0


def test_resend_cooldown_is_independent_of_expiry(store, clock):
    assert store.can_resend("a@x.com")

    store.issue("a@x.com")
    assert not store.can_resend("a@x.com")
    assert store.resend_wait_seconds("a@x.com") == 60

    clock.advance(59)
    assert not store.can_resend("a@x.com")

    clock.advance(1)
    assert store.can_resend("a@x.com")
    assert store.remaining_seconds("a@x.com") == 240


def test_clear_cooldown_allows_immediate_resend(store):
    store.issue("a@x.com")
    store.clear_cooldown("a@x.com")

    assert store.can_resend("a@x.com")


def test_purge_expired_only_drops_stale_records(store, clock, session_factory):
    store.issue("old@x.com")
    clock.advance(400)
    store.issue("new@x.com")

    assert store.purge_expired() == 1
    with session_factory() as db:
        assert db.get(OtpRecord, "old@x.com") is None
        assert db.get(OtpRecord, "new@x.com") is not None
