import threading

import pytest

from errors import ValidationError
from utils.chat_session import ChatSession, SlowModeStore
from utils.chat_storage import ChatStorage
from utils.chat_types import MessageKind, PollData
from utils.kv_store import SqlKeyValueStore


@pytest.fixture
def kv(session_factory):
    return SqlKeyValueStore(session_factory)


@pytest.fixture
def storage(kv, clock):
    s = ChatStorage(kv, now=clock)
    yield s
    s.close()


@pytest.fixture
def slow_modes(kv):
    return SlowModeStore(kv)


@pytest.fixture
def open_session(storage, slow_modes, clock):
    def _open(user_id="u1", user_type="student"):
        return ChatSession(
            storage,
            slow_modes,
            user_id=user_id,
            user_name=f"User {user_id}",
            user_type=user_type,
            scope="regional",
            region="west",
            now=clock,
        )

    return _open


def test_send_appends_message(open_session):
    session = open_session()

    message = session.send("hello")

    assert message.text == "hello"
    assert message.region == "west"
    assert message.kind == MessageKind.text
    assert [m.id for m in session.messages()] == [message.id]


def test_message_ids_are_unique(open_session):
    session = open_session()
    ids = {session.send(f"msg {i}").id for i in range(20)}

    assert len(ids) == 20


def test_slow_mode_allows_one_message_per_interval(open_session, clock):
    session = open_session()
    session.set_slow_mode(enabled=True, interval_seconds=10)

    assert session.send("first") is not None
    clock.advance(9)
    assert session.send("second") is None
    assert len(session.messages()) == 1

    clock.advance(1)
    assert session.send("third") is not None
    assert [m.text for m in session.messages()] == ["first", "third"]


def test_slow_mode_is_per_user(open_session):
    asha, ravi = open_session("u1"), open_session("u2")
    asha.set_slow_mode(enabled=True, interval_seconds=30)

    assert asha.send("hi") is not None
    assert ravi.send("hi") is not None
    assert asha.send("again") is None


def test_slow_mode_remaining_never_negative(open_session, clock):
    session = open_session()
    assert session.slow_mode_remaining() == 0

    session.set_slow_mode(enabled=True, interval_seconds=10)
    session.send("hi")
    clock.advance(2.5)
    assert session.slow_mode_remaining() == 8
    assert not session.can_send()

    clock.advance(100)
    assert session.slow_mode_remaining() == 0
    assert session.can_send()


def test_disabled_slow_mode_does_not_limit(open_session):
    session = open_session()
    session.set_slow_mode(enabled=False, interval_seconds=60)

    for i in range(5):
        assert session.send(f"msg {i}") is not None


def test_slow_mode_settings_are_shared_per_scope(open_session, slow_modes):
    open_session("u1").set_slow_mode(enabled=True, interval_seconds=15)

    settings = open_session("u2").slow_mode()
    assert settings.enabled is True
    assert settings.interval_seconds == 15
    assert slow_modes.get("global").enabled is False


@pytest.mark.parametrize("interval", [4, 61, 0])
def test_slow_mode_interval_bounds(open_session, interval):
    with pytest.raises(ValidationError):
        open_session().set_slow_mode(interval_seconds=interval)


@pytest.mark.parametrize("interval", [5, 60])
def test_slow_mode_interval_edges_accepted(open_session, interval):
    assert open_session().set_slow_mode(interval_seconds=interval).interval_seconds == interval


def test_send_validation(open_session):
    session = open_session()
    with pytest.raises(ValidationError):
        session.send("   ")
    with pytest.raises(ValidationError):
        session.send("look", MessageKind.image)
    with pytest.raises(ValidationError):
        session.send("", MessageKind.poll, poll_data=PollData.create("Pick one", ["only"]))


def _post_poll(session):
    poll = PollData.create("Best branch?", ["CSE", "ECE", "ME"])
    return session.send("", MessageKind.poll, poll_data=poll)


def test_vote_counts_once_per_user(open_session):
    asha = open_session("u1")
    message = _post_poll(asha)

    for _ in range(3):
        asha.vote_poll(message.id, "opt_0")
    asha.vote_poll(message.id, "opt_1")

    poll = asha.messages()[0].poll_data
    assert poll.voted_users == ["u1"]
    assert poll.total_votes == 1
    assert [o.votes for o in poll.options] == [1, 0, 0]


def test_total_votes_matches_option_votes(open_session):
    message = _post_poll(open_session("u0"))
    choices = ["opt_0", "opt_1", "opt_1", "opt_2", "opt_1"]
    for i, option in enumerate(choices):
        open_session(f"voter{i}").vote_poll(message.id, option)

    poll = open_session().messages()[0].poll_data
    assert poll.total_votes == sum(o.votes for o in poll.options) == 5
    assert [o.votes for o in poll.options] == [1, 3, 1]


def test_vote_ignores_unknown_option_and_plain_messages(open_session, storage):
    session = open_session()
    poll_msg = _post_poll(session)
    text_msg = session.send("not a poll")
    received = []
    storage.subscribe("regional", received.append, "west")

    session.vote_poll(poll_msg.id, "opt_99")
    session.vote_poll(text_msg.id, "opt_0")

    assert session.messages()[0].poll_data.total_votes == 0
    assert received == []
    assert session.vote_poll("missing", "opt_0") is None


def test_concurrent_votes_are_not_lost(open_session):
    message = _post_poll(open_session("author"))
    voters = [open_session(f"v{i}") for i in range(10)]

    threads = [threading.Thread(target=v.vote_poll, args=(message.id, "opt_0")) for v in voters]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    poll = open_session().messages()[0].poll_data
    assert poll.total_votes == 10
    assert sorted(poll.voted_users) == sorted(f"v{i}" for i in range(10))
