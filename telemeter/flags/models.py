"""Feature flag models and evaluation response parsing."""

from typing import Any, TypeVar

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, ValidationInfo, field_validator

from telemeter.core.json_value import NULL, JsonValue

T = TypeVar("T")

QUOTA_LIMITED_RESOURCE = "feature_flags"


class FeatureFlag(BaseModel):
    """Cached evaluation result of a single flag.

    Attributes:
        key: Flag key.
        enabled: Whether the flag is on for the current identity.
        variant: Multivariate variant name, if any.
        payload: Raw payload as received (often a JSON-encoded string).
        id: Server-side flag id, if reported.
        version: Flag definition version, if reported.
        reason: Human readable evaluation reason, if reported.
    """

    key: str
    enabled: bool = False
    variant: str | None = None
    payload: Any = None
    id: int | None = None
    version: int | None = None
    reason: str | None = None

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @classmethod
    def missing(cls, key: str) -> "FeatureFlag":
        return cls(key=key)

    @property
    def value(self) -> bool | str:
        """The variant for multivariate flags, otherwise the enabled state."""
        if self.variant:
            return self.variant
        return self.enabled

    @property
    def is_enabled(self) -> bool:
        return bool(self.variant) or self.enabled

    @property
    def has_payload(self) -> bool:
        return self.payload is not None

    def __bool__(self) -> bool:
        return self.is_enabled

    def payload_json(self) -> JsonValue:
        """Payload wrapped for safe navigation; a null value if there is none."""
        if self.payload is None:
            return NULL
        if isinstance(self.payload, str):
            parsed = JsonValue.parse(self.payload)
            return parsed if not parsed.is_null else JsonValue(self.payload)
        try:
            return JsonValue(self.payload)
        except TypeError:
            return NULL

    def payload_as(self, type_: type[T], default: T | None = None) -> T | None:
        """Validate the payload into ``type_`` (a model, dataclass or plain type).

        Returns default if there is no payload or it does not validate.
        """
        if self.payload is None:
            return default
        adapter = TypeAdapter(type_)
        try:
            if isinstance(self.payload, str):
                try:
                    return adapter.validate_json(self.payload)
                except ValidationError:
                    return adapter.validate_python(self.payload)
            return adapter.validate_python(self.payload)
        except (ValidationError, ValueError, TypeError):
            return default


class _FlagMetadata(BaseModel):
    id: int | None = None
    version: int | None = None
    payload: Any = None

    model_config = {"extra": "ignore"}


class _FlagReason(BaseModel):
    code: str | None = None
    description: str | None = None

    model_config = {"extra": "ignore"}


class _FlagDetail(BaseModel):
    key: str | None = None
    enabled: bool = False
    variant: str | None = None
    metadata: _FlagMetadata | None = None
    reason: _FlagReason | None = None

    model_config = {"extra": "ignore"}


class FlagsResponse(BaseModel):
    """Decoded evaluation response.

    Accepts both the detailed ``flags`` map and the legacy
    ``featureFlags``/``featureFlagPayloads`` pair; detailed entries win.
    """

    flags: dict[str, _FlagDetail] = Field(default_factory=dict)
    feature_flags: dict[str, bool | str] = Field(default_factory=dict, alias="featureFlags")
    feature_flag_payloads: dict[str, Any] = Field(default_factory=dict, alias="featureFlagPayloads")
    quota_limited: list[str] = Field(default_factory=list, alias="quotaLimited")
    request_id: str | None = Field(default=None, alias="requestId")
    evaluated_at: int | None = Field(default=None, alias="evaluatedAt")
    errors_while_computing_flags: bool = Field(default=False, alias="errorsWhileComputingFlags")

    model_config = {
        "extra": "ignore",
        "populate_by_name": True,
    }

    @field_validator("flags", "feature_flags", "feature_flag_payloads", "quota_limited", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None:
            return [] if info.field_name == "quota_limited" else {}
        return v

    @property
    def is_quota_limited(self) -> bool:
        return QUOTA_LIMITED_RESOURCE in self.quota_limited

    def to_flags(self) -> dict[str, FeatureFlag]:
        result: dict[str, FeatureFlag] = {}
        for key, value in self.feature_flags.items():
            if isinstance(value, str):
                flag = FeatureFlag(key=key, enabled=bool(value), variant=value or None)
            else:
                flag = FeatureFlag(key=key, enabled=bool(value))
            payload = self.feature_flag_payloads.get(key)
            if payload is not None:
                flag = flag.model_copy(update={"payload": payload})
            result[key] = flag

        for key, detail in self.flags.items():
            metadata = detail.metadata or _FlagMetadata()
            payload = metadata.payload
            if payload is None:
                payload = self.feature_flag_payloads.get(key)
            result[key] = FeatureFlag(
                key=detail.key or key,
                enabled=detail.enabled,
                variant=detail.variant or None,
                payload=payload,
                id=metadata.id,
                version=metadata.version,
                reason=detail.reason.description if detail.reason else None,
            )
        return result
