"""Error types carrying a stable code and a human readable message."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class DiagnosticError(RuntimeError):
    """Base error for the collector; ``code`` is stable across releases."""

    code: str
    message: str
    detail: str | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}" if not self.detail else f"{self.code}: {self.message} ({self.detail})"

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON body used in API error responses."""

        data = {"code": self.code, "message": self.message}
        if self.detail:
            data["detail"] = self.detail
        return data

    def to_extra(self) -> dict[str, Any]:
        """Return a dict suitable for log enrichment.

        Keys are prefixed because ``message`` is a reserved ``LogRecord`` attribute.
        """

        return {f"error_{key}": value for key, value in self.to_dict().items()}


class ConfigurationError(DiagnosticError):
    """Invalid configuration detected while constructing a component.

    These are fatal: the component refuses to start rather than failing on every record later.
    """


class StorageError(DiagnosticError):
    """A storage backend failed to read or write."""


class OtlpDecodeError(DiagnosticError):
    """A single OTLP item could not be decoded."""


__all__ = ["DiagnosticError", "ConfigurationError", "StorageError", "OtlpDecodeError"]
