"""Connection configuration, entity paths and client defaults."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterator

DEFAULT_PREFETCH_COUNT = 0
DEFAULT_SERVER_WAIT_TIME: float | None = None
DEFAULT_MAX_MESSAGE_COUNT = 10
DEFAULT_TIME_TO_LIVE = timedelta(minutes=5)

DEAD_LETTER_SUFFIX = "$deadletterqueue"
_SUBSCRIPTIONS_SEGMENT = "subscriptions"


def parse_connection_string(connection_string: str) -> dict[str, str]:
    """Split ``Key=Value;Key=Value`` into a dict keyed by lower-cased key.

    Values may contain ``=`` (base64 keys), so only the first one separates.
    """
    parts: dict[str, str] = {}
    for segment in connection_string.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        key, sep, value = segment.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Malformed connection string segment: {segment!r}")
        parts[key.strip().lower()] = value.strip()
    return parts


@dataclass(frozen=True)
class EntityPath:
    """A parsed entity address.

    ``orders`` is a queue (or topic, for senders), ``events/subscriptions/audit``
    a subscription, and either form suffixed by ``/$deadletterqueue`` addresses
    the entity's dead-letter sub-queue.
    """

    name: str
    subscription: str | None = None
    is_dead_letter: bool = False

    @classmethod
    def parse(cls, path: str) -> EntityPath:
        segments = [s for s in path.strip().strip("/").split("/") if s]
        if not segments:
            raise ValueError("Entity path must not be empty")
        dead_letter = segments[-1].lower() == DEAD_LETTER_SUFFIX
        if dead_letter:
            segments = segments[:-1]
        if len(segments) == 1:
            return cls(name=segments[0], is_dead_letter=dead_letter)
        if len(segments) == 3 and segments[1].lower() == _SUBSCRIPTIONS_SEGMENT:
            return cls(
                name=segments[0],
                subscription=segments[2],
                is_dead_letter=dead_letter,
            )
        raise ValueError(f"Unsupported entity path: {path!r}")

    @property
    def is_subscription(self) -> bool:
        return self.subscription is not None

    @property
    def topic(self) -> str | None:
        return self.name if self.is_subscription else None

    @property
    def base_path(self) -> str:
        """Path of the owning entity, without the dead-letter suffix."""
        if self.subscription is None:
            return self.name
        return f"{self.name}/{_SUBSCRIPTIONS_SEGMENT}/{self.subscription}"

    def dead_letter_path(self) -> str:
        return f"{self.base_path}/{DEAD_LETTER_SUFFIX}"

    def __str__(self) -> str:
        return self.dead_letter_path() if self.is_dead_letter else self.base_path


class ConnectionConfig(BaseModel):
    """Immutable connection string + entity path pair.

    Use :meth:`build` to get :class:`ConfigurationError` instead of pydantic's
    ``ValidationError`` on bad input.
    """

    model_config = ConfigDict(frozen=True)

    connection_string: str = Field(..., min_length=1)
    entity_path: str = ""

    @field_validator("connection_string")
    @classmethod
    def _validate_connection_string(cls, value: str) -> str:
        parts = parse_connection_string(value)
        if not parts.get("endpoint"):
            raise ValueError("Connection string is missing 'Endpoint'")
        has_key = bool(parts.get("sharedaccesskeyname")) and bool(
            parts.get("sharedaccesskey")
        )
        if not has_key and not parts.get("sharedaccesssignature"):
            raise ValueError(
                "Connection string needs SharedAccessKeyName/SharedAccessKey "
                "or SharedAccessSignature"
            )
        return value

    @field_validator("entity_path")
    @classmethod
    def _validate_entity_path(cls, value: str) -> str:
        value = value.strip().strip("/")
        EntityPath.parse(value)
        return value

    @model_validator(mode="before")
    @classmethod
    def _resolve_entity_path(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(
            data.get("connection_string"), str
        ):
            return data
        embedded = (
            parse_connection_string(data["connection_string"]).get("entitypath") or ""
        ).strip("/")
        explicit = str(data.get("entity_path") or "").strip().strip("/")
        if embedded and explicit and embedded != explicit:
            raise ValueError(
                f"Entity path {explicit!r} conflicts with EntityPath "
                f"{embedded!r} in the connection string"
            )
        return {**data, "entity_path": explicit or embedded}

    @classmethod
    def build(cls, connection_string: str, entity_path: str = "") -> ConnectionConfig:
        try:
            return cls(connection_string=connection_string, entity_path=entity_path)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

    @property
    def entity(self) -> EntityPath:
        return EntityPath.parse(self.entity_path)

    def _part(self, key: str) -> str | None:
        return parse_connection_string(self.connection_string).get(key)

    @property
    def endpoint(self) -> str:
        return self._part("endpoint") or ""

    @property
    def namespace(self) -> str:
        """Fully qualified namespace host taken from ``Endpoint``."""
        return urlparse(self.endpoint).hostname or self.endpoint

    @property
    def shared_access_key_name(self) -> str | None:
        return self._part("sharedaccesskeyname")

    @property
    def shared_access_key(self) -> str | None:
        return self._part("sharedaccesskey")

    def for_entity(self, entity_path: str) -> ConnectionConfig:
        """Same namespace and credentials, another entity."""
        parts = [
            segment
            for segment in self.connection_string.split(";")
            if segment.strip() and not segment.strip().lower().startswith("entitypath=")
        ]
        return ConnectionConfig.build(";".join(parts), entity_path)

    def __repr_args__(self) -> Iterator[tuple[str, Any]]:
        # never leak the shared access key
        yield "namespace", self.namespace
        yield "entity_path", self.entity_path


class ReceiverOptions(BaseModel):
    """Tuning for receivers and listener services."""

    model_config = ConfigDict(frozen=True)

    prefetch_count: int = Field(default=DEFAULT_PREFETCH_COUNT, ge=0)
    server_wait_time: float | None = Field(default=DEFAULT_SERVER_WAIT_TIME, gt=0)
    max_message_count: int = Field(default=DEFAULT_MAX_MESSAGE_COUNT, ge=1)
    auto_settle: bool = True


class SenderOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    default_time_to_live: timedelta = DEFAULT_TIME_TO_LIVE

    @field_validator("default_time_to_live")
    @classmethod
    def _positive(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("default_time_to_live must be positive")
        return value
