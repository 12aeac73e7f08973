"""
hypercorn_core.schema
---------------------
Pydantic models for the payload of every message kind a feed can carry.

Payloads arriving from a feed are untrusted: `validate()` is the single
boundary that turns a raw dict into a typed message or raises SchemaError.
Unknown fields are ignored so newer peers can extend payloads.
"""

from __future__ import annotations
from typing import Any, Dict, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import SchemaError
from .utils import b64d, decode_key

M = TypeVar("M", bound=BaseModel)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


def _check_feed_key(value: str) -> str:
    decode_key(value)
    return value


class OpenMessage(_Payload):
    protocol: str
    version: int = Field(..., strict=True, ge=1)


class FollowMessage(_Payload):
    feed_key: str

    check_feed_key = field_validator("feed_key")(_check_feed_key)

    @property
    def key(self) -> bytes:
        return decode_key(self.feed_key)


class UnfollowMessage(FollowMessage):
    pass


class TrustMessage(_Payload):
    expires_at: float
    feed_key: str
    link: str
    description: Optional[str] = None

    check_feed_key = field_validator("feed_key")(_check_feed_key)

    @field_validator("link")
    @classmethod
    def _check_link(cls, value: str) -> str:
        try:
            if not b64d(value):
                raise ValueError("empty link")
        except (ValueError, UnicodeEncodeError) as e:
            raise ValueError(f"link must be base64: {e}") from e
        return value

    @property
    def key(self) -> bytes:
        return decode_key(self.feed_key)

    @property
    def link_bytes(self) -> bytes:
        return b64d(self.link)


class ReplyTo(_Payload):
    feed_key: str
    index: int = Field(..., strict=True, ge=0)

    check_feed_key = field_validator("feed_key")(_check_feed_key)

    @property
    def key(self) -> bytes:
        return decode_key(self.feed_key)


class PostMessage(_Payload):
    content: str
    reply_to: Optional[ReplyTo] = None


def validate(payload: Any, schema: Type[M]) -> M:
    if not isinstance(payload, dict):
        raise SchemaError(f"{schema.__name__}: payload must be an object, got {type(payload).__name__}")
    try:
        return schema.model_validate(payload)
    except pydantic.ValidationError as e:
        raise SchemaError(f"{schema.__name__}: {e.error_count()} validation error(s): {e.errors()[0]['msg']}") from e


def to_payload(message: BaseModel) -> Dict[str, Any]:
    return message.model_dump(exclude_none=True)
