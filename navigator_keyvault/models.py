"""
KeyVault data model.

Records are pydantic models with snake_case attributes; the persisted state
and the export documents use the camelCase aliases (``baseUrl``,
``providerId``...).  ``ApiModel`` keeps the wire names reported by the
model-list endpoints.
"""
import uuid
from enum import Enum
from typing import Optional, Union
from datetime import datetime, timezone
from urllib.parse import urlparse

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Unique, immutable record identifier."""
    return uuid.uuid4().hex


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are read as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ApiType(str, Enum):
    OPENAI = "openai"
    CLAUDE = "claude"
    GENERIC = "generic"


class KeyStatus(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring-soon"
    EXPIRED = "expired"


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    def to_document(self) -> dict:
        """JSON-ready dict using the persisted (camelCase) field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TokenLimits(BaseModel):
    context_window: Optional[int] = None
    max_input: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("max_input", "max_input_token_length"),
    )
    max_output: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("max_output", "max_output_token_length"),
    )
    max_reasoning: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices(
            "max_reasoning", "max_reasoning_token_length"
        ),
    )


class ApiModel(BaseModel):
    """A model reported by a provider. Refreshed only by a successful key test."""
    id: str
    name: str
    owned_by: Optional[str] = None
    task_type: Optional[Union[str, list[str]]] = None
    input_modalities: Optional[list[str]] = None
    output_modalities: Optional[list[str]] = None
    token_limits: Optional[TokenLimits] = None
    domain: Optional[str] = None
    version: Optional[str] = None
    created: Optional[int] = None


class Provider(_Record):
    id: str
    name: str
    base_url: str
    api_type: ApiType = ApiType.OPENAI
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_tz(cls, v: datetime) -> datetime:
        return as_utc(v)


class ApiKey(_Record):
    """A credential bound to a provider.

    ``key`` always holds the stored form: an encryption envelope or, when
    encryption degraded, the plaintext.
    """
    id: str
    provider_id: str
    key: str
    name: Optional[str] = None
    note: Optional[str] = None
    expires_at: Optional[datetime] = None
    models: Optional[list[ApiModel]] = None
    models_updated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("expires_at", "models_updated_at", "created_at", "updated_at")
    @classmethod
    def normalize_tz(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class ApiKeyWithStatus(ApiKey):
    """ApiKey with its expiry status. Computed on read, never persisted."""
    status: KeyStatus
    days_until_expiry: Optional[int] = None


class ProviderWithKeys(Provider):
    keys: list[ApiKeyWithStatus] = Field(default_factory=list)
    valid_count: int = 0
    expired_count: int = 0


# ---------------------------------------------------------------------------
# Input forms
# ---------------------------------------------------------------------------

def validate_base_url(value: str) -> str:
    value = value.strip()
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid URL: {value!r}")
    return value


def _required_text(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("value cannot be empty")
    return value


class ProviderForm(_Record):
    name: str
    base_url: str
    api_type: ApiType = ApiType.OPENAI

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _required_text(v)

    @field_validator("base_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return validate_base_url(v)


class ProviderPatch(_Record):
    name: Optional[str] = None
    base_url: Optional[str] = None
    api_type: Optional[ApiType] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _required_text(v)

    @field_validator("base_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else validate_base_url(v)


class KeyForm(_Record):
    key: str
    name: Optional[str] = None
    note: Optional[str] = None
    expires_at: Optional[datetime] = None

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        return _required_text(v)

    @field_validator("expires_at")
    @classmethod
    def normalize_tz(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class KeyPatch(_Record):
    """Partial key update; only the fields explicitly set are applied."""
    key: Optional[str] = None
    name: Optional[str] = None
    note: Optional[str] = None
    expires_at: Optional[datetime] = None

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _required_text(v)

    @field_validator("expires_at")
    @classmethod
    def normalize_tz(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)
