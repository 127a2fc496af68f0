"""Job kind interface.

A job kind supplies the domain logic (how to count, read, validate and
apply items) while the runner owns lifecycle, batching, progress and
failure handling. Capabilities are declared explicitly; the runner and the
control layer check them instead of probing for methods.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from sqlalchemy.orm import Session


class Capability(str, Enum):
    ROLLBACKABLE = "rollbackable"
    RESUMABLE = "resumable"


@dataclass
class ChunkResult:
    """Outcome of one applied chunk.

    ``compensations`` are JSON-serialisable payloads that undo the chunk;
    they are stored in application order.
    """

    stats: dict[str, int] = field(default_factory=dict)
    compensations: list[dict[str, Any]] = field(default_factory=list)


class JobKind(ABC):
    name: ClassVar[str]
    capabilities: ClassVar[frozenset[Capability]] = frozenset()

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @abstractmethod
    def preflight(self, input_reference: str) -> None:
        """Reject unusable input before any record reaches running."""

    @abstractmethod
    def count_items(self, input_reference: str, session: Session) -> int:
        """Total items, or 0 when unknown."""

    @abstractmethod
    def iter_items(
        self, input_reference: str, session: Session, offset: int = 0
    ) -> Iterator[Any]:
        """Stream items, skipping the first ``offset`` already processed."""

    def validate_item(self, item: Any, position: int) -> Any:
        """Return the cleaned item or raise ItemValidationError."""
        return item

    @abstractmethod
    def apply_chunk(self, items: list[Any], session: Session) -> ChunkResult:
        """Apply one chunk inside the caller's transaction (no commit)."""

    def validate_result(self, session: Session, stats: dict[str, int]) -> None:
        """Post-run check; raise to fail the job."""


class Rollbackable(ABC):
    @abstractmethod
    def compensate(self, descriptor: dict[str, Any], session: Session) -> None:
        """Undo the effect recorded in one rollback descriptor (no commit)."""
