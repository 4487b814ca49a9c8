"""Wire schemas for the task and completion topics."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from imgpipe.core.errors import MessageDecodeError

UNKNOWN_ERROR = "Unknown error"


class _WireMessage(BaseModel):
    """JSON message keyed by image id."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1, validation_alias=AliasChoices("id", "uuid"))

    @property
    def key(self) -> str:
        return self.id

    def to_bytes(self) -> bytes:
        """Encode as UTF-8 JSON using the camelCase wire names."""

        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes | str | None):
        """Decode a broker payload, raising MessageDecodeError on bad input."""

        if raw is None:
            raise MessageDecodeError(f"{cls.__name__} payload is empty")
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise MessageDecodeError(f"Invalid {cls.__name__}: {exc}") from exc


class TaskMessage(_WireMessage):
    """Request to transform the staging object stored under ``id``."""

    start_time: int = Field(
        validation_alias=AliasChoices("startTime", "start_time"),
        serialization_alias="startTime",
    )


class CompletionMessage(_WireMessage):
    """Outcome of processing one task."""

    success: bool
    processing_time: int = Field(
        validation_alias=AliasChoices("processingTime", "processing_time"),
        serialization_alias="processingTime",
    )
    error: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def default_failure_error(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("success") is False and not data.get("error"):
            data = {**data, "error": UNKNOWN_ERROR}
        return data

    @model_validator(mode="after")
    def check_error_matches_outcome(self) -> "CompletionMessage":
        if self.success and self.error is not None:
            raise ValueError("'error' is only allowed on failed completions.")
        return self

    @classmethod
    def succeeded(cls, image_id: str, processing_time: int) -> "CompletionMessage":
        return cls(id=image_id, success=True, processing_time=processing_time)

    @classmethod
    def failed(cls, image_id: str, processing_time: int, error: str | None) -> "CompletionMessage":
        return cls(id=image_id, success=False, processing_time=processing_time, error=error)
