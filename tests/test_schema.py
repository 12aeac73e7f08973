import pytest

from hypercorn_core.crypto import ed25519_generate
from hypercorn_core.errors import SchemaError
from hypercorn_core.schema import (
    FollowMessage, OpenMessage, PostMessage, TrustMessage, to_payload, validate,
)
from hypercorn_core.utils import b64e


@pytest.fixture
def feed_key():
    return b64e(ed25519_generate()[1])


def test_follow_valid(feed_key):
    value = validate({"feed_key": feed_key, "extra": 1}, FollowMessage)
    assert value.feed_key == feed_key
    assert len(value.key) == 32


@pytest.mark.parametrize("payload", [
    {},
    {"feed_key": 5},
    {"feed_key": "not base64!"},
    {"feed_key": b64e(b"too short")},
    "feed_key",
    None,
])
def test_follow_invalid(payload):
    with pytest.raises(SchemaError):
        validate(payload, FollowMessage)


def test_trust_message(feed_key):
    value = validate({
        "expires_at": 1700000000.5,
        "feed_key": feed_key,
        "link": b64e(b"\x01" * 105),
    }, TrustMessage)
    assert value.description is None
    assert value.link_bytes == b"\x01" * 105

    with pytest.raises(SchemaError):
        validate({"expires_at": 1, "feed_key": feed_key, "link": "%%%"}, TrustMessage)


def test_post_with_reply(feed_key):
    value = validate({"content": "hi", "reply_to": {"feed_key": feed_key, "index": 5}}, PostMessage)
    assert value.reply_to.index == 5
    assert to_payload(value) == {"content": "hi", "reply_to": {"feed_key": feed_key, "index": 5}}

    with pytest.raises(SchemaError):
        validate({"content": "hi", "reply_to": {"feed_key": feed_key, "index": -1}}, PostMessage)
    with pytest.raises(SchemaError):
        validate({"content": "hi", "reply_to": {"feed_key": feed_key, "index": "5"}}, PostMessage)


def test_open_message():
    assert validate({"protocol": "hypercorn", "version": 1}, OpenMessage).version == 1
    with pytest.raises(SchemaError):
        validate({"protocol": "hypercorn"}, OpenMessage)
