"""MessageEnvelope: immutable message record exchanged with the broker."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEAD_LETTER_REASON = "DeadLetterReason"
DEAD_LETTER_DESCRIPTION = "DeadLetterErrorDescription"


def generate_message_id() -> str:
    return str(uuid.uuid4())


def _to_bytes(value: Any) -> Any:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


class MessageEnvelope(BaseModel):
    """Payload bytes plus broker- and user-assigned metadata.

    ``lock_token``, ``sequence_number``, ``locked_until``, ``delivery_count``
    and ``enqueued_at`` are set by the broker on received envelopes and are
    ignored when sending.
    """

    model_config = ConfigDict(frozen=True)

    body: bytes = b""
    content_type: str | None = None
    message_id: str | None = None
    to: str | None = None
    reply_to: str | None = None
    reply_to_session_id: str | None = None
    label: str | None = None
    session_id: str | None = None
    correlation_id: str | None = None
    properties: dict[str, str] = Field(default_factory=dict)
    time_to_live: timedelta | None = None

    lock_token: str | None = None
    sequence_number: int | None = Field(default=None, ge=0)
    locked_until: datetime | None = None
    delivery_count: int = Field(default=0, ge=0)
    enqueued_at: datetime | None = None

    @field_validator("body", mode="before")
    @classmethod
    def _coerce_body(cls, value: Any) -> Any:
        return _to_bytes(value)

    @field_validator("properties", mode="before")
    @classmethod
    def _stringify_properties(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @property
    def is_locked(self) -> bool:
        return self.lock_token is not None

    @property
    def dead_letter_reason(self) -> str | None:
        return self.properties.get(DEAD_LETTER_REASON)

    @property
    def dead_letter_description(self) -> str | None:
        return self.properties.get(DEAD_LETTER_DESCRIPTION)

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding)

    def for_sending(self) -> MessageEnvelope:
        """Copy without the broker-assigned delivery fields."""
        return self.model_copy(
            update={
                "lock_token": None,
                "sequence_number": None,
                "locked_until": None,
                "delivery_count": 0,
                "enqueued_at": None,
            }
        )


class SendParameters(BaseModel):
    """Optional send parameters, accepted in camelCase or snake_case.

    ``time_to_live`` is given in minutes (or as a ``timedelta``).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    content_type: str | None = Field(default=None, alias="contentType")
    message_id: str | None = Field(default=None, alias="messageId")
    to: str | None = None
    reply_to: str | None = Field(default=None, alias="replyTo")
    reply_to_session_id: str | None = Field(default=None, alias="replyToSessionId")
    label: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")
    correlation_id: str | None = Field(default=None, alias="correlationId")
    time_to_live: timedelta | None = Field(default=None, alias="timeToLive")

    @field_validator("time_to_live", mode="before")
    @classmethod
    def _minutes(cls, value: Any) -> Any:
        if value is None or isinstance(value, timedelta):
            return value
        return timedelta(minutes=int(value))

    @field_validator("message_id", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def coerce(
        cls, parameters: SendParameters | dict[str, Any] | None
    ) -> SendParameters:
        if parameters is None:
            return cls()
        if isinstance(parameters, SendParameters):
            return parameters
        return cls.model_validate(parameters)

    def to_envelope(
        self,
        body: bytes | str,
        properties: dict[str, Any] | None = None,
    ) -> MessageEnvelope:
        """Build an envelope; the message id stays ``None`` unless given."""
        return MessageEnvelope(
            body=body,
            content_type=self.content_type,
            message_id=self.message_id,
            to=self.to,
            reply_to=self.reply_to,
            reply_to_session_id=self.reply_to_session_id,
            label=self.label,
            session_id=self.session_id,
            correlation_id=self.correlation_id,
            properties=properties or {},
            time_to_live=self.time_to_live,
        )
