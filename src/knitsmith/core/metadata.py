"""Validation of the document preamble (YAML front matter)."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date as _date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


__all__ = [
    "DocumentMetadata",
    "OUTPUT_FORMATS",
    "PreambleError",
    "normalise_output_format",
    "parse_metadata",
]


class PreambleError(ValueError):
    """Raised when preamble fields contain invalid values."""


OUTPUT_FORMATS: dict[str, str] = {
    "html": "html",
    "html_document": "html",
    "html_page": "html",
    "markdown": "markdown",
    "md": "markdown",
    "md_document": "markdown",
}


def normalise_output_format(value: Any) -> str:
    """Map an output-format descriptor onto ``html`` or ``markdown``."""
    if value is None:
        return "html"
    if isinstance(value, Mapping):
        # R Markdown style: ``output: {html_document: {...}}``
        keys = list(value.keys())
        if not keys:
            return "html"
        value = keys[0]
    token = str(value).strip().lower()
    if "::" in token:
        token = token.rsplit("::", 1)[-1]
    try:
        return OUTPUT_FORMATS[token]
    except KeyError:
        raise ValueError(f"Unsupported output format '{value}'.") from None


class DocumentMetadata(BaseModel):
    """Document-level configuration declared in the preamble."""

    model_config = ConfigDict(extra="allow")

    title: str | None = None
    subtitle: str | None = None
    author: list[str] = Field(default_factory=list)
    date: str | None = None
    output: str = "html"
    theme: str = "default"
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title", "subtitle", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        stripped = str(value).strip()
        return stripped or None

    @field_validator("author", mode="before")
    @classmethod
    def _coerce_authors(cls, value: Any) -> list[str]:
        if value is None:
            return []
        entries = value if isinstance(value, (list, tuple)) else [value]
        authors: list[str] = []
        for entry in entries:
            if isinstance(entry, Mapping):
                entry = entry.get("name")
            if entry is None:
                continue
            name = str(entry).strip()
            if name:
                authors.append(name)
        return authors

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, (_date, datetime)):
            return value.isoformat()
        stripped = str(value).strip()
        return stripped or None

    @field_validator("output", mode="before")
    @classmethod
    def _coerce_output(cls, value: Any) -> str:
        return normalise_output_format(value)

    @field_validator("theme", mode="before")
    @classmethod
    def _coerce_theme(cls, value: Any) -> str:
        if value is None:
            return "default"
        stripped = str(value).strip()
        return stripped or "default"

    @field_validator("options", mode="before")
    @classmethod
    def _coerce_options(cls, value: Any) -> dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise ValueError("Chunk options must be a mapping.")
        return {str(key).replace(".", "_"): item for key, item in value.items()}

    @property
    def extra_fields(self) -> dict[str, Any]:
        """Return preamble keys that are not part of the known schema."""
        return dict(self.model_extra or {})


def parse_metadata(payload: Mapping[str, Any] | None) -> DocumentMetadata:
    """Validate a raw preamble mapping into :class:`DocumentMetadata`."""
    try:
        return DocumentMetadata.model_validate(dict(payload or {}))
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'preamble'}: {error['msg']}"
            for error in exc.errors()
        )
        raise PreambleError(f"Invalid document preamble: {details}") from exc
