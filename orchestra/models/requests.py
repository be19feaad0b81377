"""Inbound generation request model.

Defaults mirror the client's generation form: every musical parameter is
optional and falls back to the form's initial value, only ``userId`` is
required.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Optional

from pydantic import AliasChoices, ConfigDict, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from orchestra.errors import ValidationError
from orchestra.models.base import CamelModel

MISSING_USER_ID_MESSAGE = "User ID is a required parameter."
INVALID_USER_ID_MESSAGE = "User ID must not contain path separators."
# Matches orchestration_status.user_id (String(128)).
MAX_USER_ID_LENGTH = 128
USER_ID_TOO_LONG_MESSAGE = f"User ID must be at most {MAX_USER_ID_LENGTH} characters."

_LEADING_INT = re.compile(r"^\s*(\d+)")


class GenerationRequest(CamelModel):
    """Musical parameters for one generation run. Immutable once accepted."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    user_id: str
    key: str = "C"
    scale: str = "major"
    tempo: int = Field(default=120, ge=1, le=400)
    mood: str = "N/A"
    genre: str = "N/A"
    phrase_type: str = "N/A"
    voice_type: str = "N/A"
    octave_range: list[str] = Field(default_factory=list)
    midi_length: str = "N/A"
    beat: str = "4/4"
    user_file_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("userFileName", "requestedFileName", "user_file_name"),
        serialization_alias="userFileName",
    )

    @field_validator("user_id")
    @classmethod
    def _require_user_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError(MISSING_USER_ID_MESSAGE)
        if "/" in v or v in (".", ".."):
            raise ValueError(INVALID_USER_ID_MESSAGE)
        if len(v) > MAX_USER_ID_LENGTH:
            raise ValueError(USER_ID_TOO_LONG_MESSAGE)
        return v

    @field_validator(
        "key", "scale", "tempo", "mood", "genre", "phrase_type", "voice_type", "beat",
        mode="before",
    )
    @classmethod
    def _null_means_default(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None and info.field_name is not None:
            return cls.model_fields[info.field_name].default
        return v

    @field_validator("octave_range", mode="before")
    @classmethod
    def _coerce_octave_range(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        return v

    @field_validator("midi_length", mode="before")
    @classmethod
    def _coerce_midi_length(cls, v: Any) -> Any:
        if v is None:
            return "N/A"
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v))
        return v

    @field_validator("user_file_name")
    @classmethod
    def _blank_file_name_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @property
    def max_duration_seconds(self) -> int | None:
        """Requested length in seconds, or None when ``midiLength`` is not numeric."""
        match = _LEADING_INT.match(self.midi_length)
        if match is None:
            return None
        seconds = int(match.group(1))
        return seconds if seconds > 0 else None

    def musical_parameters(self) -> dict[str, object]:
        """camelCase parameter dict forwarded to the generation service."""
        return self.model_dump(by_alias=True, exclude={"user_id", "user_file_name"})


def _is_user_id_error(loc: tuple[int | str, ...]) -> bool:
    return bool(loc) and loc[0] in ("userId", "user_id")


def parse_generation_request(payload: object) -> GenerationRequest:
    """Validate a raw JSON payload into a GenerationRequest.

    Raises:
        ValidationError: ``userId`` missing/empty (with the canonical message)
            or any other field failing validation.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object.")
    try:
        return GenerationRequest.model_validate(dict(payload))
    except PydanticValidationError as exc:
        errors = exc.errors()
        for err in errors:
            if _is_user_id_error(tuple(err["loc"])):
                if INVALID_USER_ID_MESSAGE in str(err.get("msg", "")):
                    raise ValidationError(INVALID_USER_ID_MESSAGE) from exc
                if USER_ID_TOO_LONG_MESSAGE in str(err.get("msg", "")):
                    raise ValidationError(USER_ID_TOO_LONG_MESSAGE) from exc
                raise ValidationError(MISSING_USER_ID_MESSAGE) from exc
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"]) for err in errors
        )
        raise ValidationError(f"Invalid request fields: {fields}") from exc
