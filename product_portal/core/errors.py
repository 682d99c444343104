from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PortalError(Exception):
    """Base error envelope. Prefer returning/printing these rather than raising raw exceptions."""

    code: str
    message: str
    file: Optional[str] = None
    path: Optional[str] = None

    def __str__(self) -> str:
        parts: list[str] = []
        if self.file:
            parts.append(self.file)
        if self.path:
            parts.append(self.path)
        loc = ":".join(parts) if parts else "<store>"
        return f"{loc}: {self.code}: {self.message}"


class StoreLoadError(PortalError):
    """Store or file could not be read or parsed (io, store and loader layers)."""


class AggregateValidationError(PortalError):
    """Stored document parsed but has the wrong shape (validator, CLI usage checks)."""


class WriteError(PortalError):
    """A write was refused: forbidden role, stale revision, unreadable store or unknown target."""
