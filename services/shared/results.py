"""Result records returned by pipeline operations."""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


@dataclass
class FailedItem:
    """A single item a batch could not process."""
    item: Any
    error: str
    error_type: str = "Exception"

    @classmethod
    def from_exception(cls, item: Any, exc: BaseException) -> 'FailedItem':
        return cls(item=item, error=str(exc), error_type=type(exc).__name__)


@dataclass
class BatchResult:
    """Outcome of a batch operation; partial failure is reported, not raised."""
    successful: List[Any] = field(default_factory=list)
    failed: List[FailedItem] = field(default_factory=list)
    skipped: List[Any] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success_count(self) -> int:
        return len(self.successful)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed) + len(self.skipped)

    def record_failure(self, item: Any, exc: BaseException) -> None:
        self.failed.append(FailedItem.from_exception(item, exc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successful": self.success_count,
            "failed": [asdict(f) for f in self.failed],
            "skipped": len(self.skipped),
            "cancelled": self.cancelled,
            "total": self.total
        }


@dataclass
class ScrapeResult:
    """Outcome of scraping one URL."""
    url: str
    document_id: Optional[int]
    skipped: bool = False
    title: Optional[str] = None
    word_count: int = 0
    method: Optional[str] = None


@dataclass
class IngestResult:
    """Outcome of segmenting one document."""
    document_id: int
    chunk_count: int
    skipped: bool = False


@dataclass
class ReconciliationReport:
    """Disagreements between chunk embedding status and the vector index."""
    missing_vectors: List[int] = field(default_factory=list)
    orphan_vectors: List[str] = field(default_factory=list)
    repaired: bool = False

    @property
    def consistent(self) -> bool:
        return not self.missing_vectors and not self.orphan_vectors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "missing_vectors": list(self.missing_vectors),
            "orphan_vectors": list(self.orphan_vectors),
            "repaired": self.repaired,
            "consistent": self.consistent
        }
