"""
Data Models - Type definitions for the crawl & index engine.

These dataclasses represent the records persisted by the stores and the
values flowing between the connector, orchestrator and search index.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════
# Revision tokens
# ═══════════════════════════════════════════════════════════════════

_DIGITS = re.compile(r"(\d+)")


def revision_key(token: str) -> Tuple:
    """
    Natural ordering key for an opaque revision token.

    Digit runs compare numerically, everything else lexicographically,
    so "9" < "10" and "r2" < "r10".
    """
    parts = _DIGITS.split(token or "")
    return tuple(int(p) if i % 2 else p for i, p in enumerate(parts))


def is_newer_revision(incoming: str, stored: Optional[str]) -> bool:
    """True if `incoming` is strictly newer than `stored` (None is oldest)."""
    if stored is None:
        return True
    return revision_key(incoming) > revision_key(stored)


# ═══════════════════════════════════════════════════════════════════
# Enumerations
# ═══════════════════════════════════════════════════════════════════

class Facet(str, Enum):
    """Filterable metadata dimensions bound from the folder path."""
    SUBJECT = "subject"
    GRADE_LEVEL = "gradeLevel"
    LESSON = "lesson"
    LESSON_PART = "lessonPart"
    FILE_TYPE = "fileType"


class FileType(str, Enum):
    VIDEO = "video"
    IMAGE = "image"
    DOCUMENT = "document"
    DESIGN_SOURCE = "design_source"
    OTHER = "other"


class Confidence(str, Enum):
    """How much of a path the taxonomy grammar could explain."""
    FULL = "full"
    PARTIAL = "partial"
    UNSTRUCTURED = "unstructured"


class IndexState(str, Enum):
    PENDING = "pending"
    INDEXED = "indexed"
    NEEDS_REVIEW = "needsReview"
    DELETED = "deleted"


# States the query path is allowed to return
SERVABLE_STATES = frozenset({IndexState.INDEXED, IndexState.NEEDS_REVIEW})


class JobKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class JobState(str, Enum):
    """Crawl job lifecycle, one column per dashboard lane."""
    QUEUED = "queued"
    PROCESSING = "processing"
    REVIEW = "review"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.REVIEW, JobState.DONE, JobState.FAILED})


class ChangeType(str, Enum):
    """Type of change reported by the source."""
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    MOVED = "moved"


# ═══════════════════════════════════════════════════════════════════
# Connector-facing records
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DriveEntry:
    """One row of a folder listing."""
    file_id: str
    name: str
    path: str
    revision_token: str
    mime_type: str
    parent_id: Optional[str] = None

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE


@dataclass
class FileMetadata:
    """
    File-level attributes returned by the connector.

    Carries the location fields too, so an incremental observation can be
    built from a change event that only names the file.
    """
    file_id: str
    name: str
    path: str
    revision_token: str
    mime_type: str = ""
    author_name: Optional[str] = None
    created_at: Optional[str] = None
    size_bytes: Optional[int] = None
    parent_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_entry(self) -> DriveEntry:
        return DriveEntry(
            file_id=self.file_id,
            name=self.name,
            path=self.path,
            revision_token=self.revision_token,
            mime_type=self.mime_type,
            parent_id=self.parent_id,
        )

    def intrinsic(self) -> Dict[str, Any]:
        """Intrinsic metadata as stored on the Asset."""
        data: Dict[str, Any] = {
            "authorName": self.author_name,
            "createdAt": self.created_at,
            "sizeBytes": self.size_bytes,
            "mimeType": self.mime_type,
        }
        data.update(self.extra)
        return data


@dataclass(frozen=True)
class ChangeEvent:
    """A change notification for one file."""
    file_id: str
    revision_token: str
    change_type: ChangeType

    def to_dict(self) -> Dict[str, str]:
        return {
            "fileId": self.file_id,
            "revisionToken": self.revision_token,
            "changeType": self.change_type.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "ChangeEvent":
        return cls(
            file_id=data["fileId"],
            revision_token=data["revisionToken"],
            change_type=ChangeType(data["changeType"]),
        )


# ═══════════════════════════════════════════════════════════════════
# Persisted records
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ParseResult:
    """Output of the taxonomy parser."""
    tags: Dict[str, str]
    confidence: Confidence
    unmatched: Tuple[str, ...] = ()


@dataclass
class Asset:
    """One indexed file and its derived metadata."""
    file_id: str
    path: str
    name: str
    revision_token: str
    tags: Dict[str, str] = field(default_factory=dict)
    intrinsic_metadata: Dict[str, Any] = field(default_factory=dict)
    index_state: IndexState = IndexState.PENDING
    confidence: Confidence = Confidence.UNSTRUCTURED
    indexed_at: Optional[datetime] = None

    @property
    def is_servable(self) -> bool:
        return self.index_state in SERVABLE_STATES

    def tombstoned(self, revision_token: Optional[str] = None) -> "Asset":
        """Copy of this asset in the deleted state."""
        return replace(
            self,
            index_state=IndexState.DELETED,
            revision_token=revision_token or self.revision_token,
            indexed_at=utcnow(),
        )


@dataclass(frozen=True)
class PermissionSnapshot:
    """Access-control mirror for one file."""
    file_id: str
    principals: FrozenSet[str]
    captured_at: datetime
    revision_token: Optional[str] = None


@dataclass
class CrawlJob:
    """Unit of scheduled work over a folder subtree."""
    scope_folder_id: str
    kind: JobKind
    job_id: Optional[int] = None            # None before enqueue
    state: JobState = JobState.QUEUED
    scope_path: Optional[str] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    owner: Optional[str] = None
    payload: List[ChangeEvent] = field(default_factory=list)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None


@dataclass(frozen=True)
class JobTransition:
    """One entry of a job's append-only audit trail."""
    job_id: int
    from_state: Optional[JobState]
    to_state: JobState
    at: datetime
    reason: Optional[str] = None
    owner: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════
# Search surface
# ═══════════════════════════════════════════════════════════════════

@dataclass
class SearchQuery:
    text: str = ""
    facet_filters: Dict[str, str] = field(default_factory=dict)
    principal: str = ""
    page: int = 1
    page_size: Optional[int] = None


@dataclass
class SearchHit:
    file_id: str
    path: str
    tags: Dict[str, str]
    score: float
    source_url: Optional[str] = None


@dataclass
class SearchResponse:
    results: List[SearchHit]
    total_approx: int
    took_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [
                {
                    "fileId": hit.file_id,
                    "path": hit.path,
                    "tags": hit.tags,
                    "score": hit.score,
                    "sourceUrl": hit.source_url,
                }
                for hit in self.results
            ],
            "totalApprox": self.total_approx,
            "tookMs": self.took_ms,
        }


@dataclass
class CrawlStatus:
    """Dashboard view of one scope."""
    scope_folder_id: str
    state: Optional[JobState]
    asset_count: int
    last_error: Optional[str] = None


@dataclass
class CrawlStats:
    """Statistics from one crawl job."""
    files_seen: int = 0
    files_indexed: int = 0
    files_unchanged: int = 0
    files_needs_review: int = 0
    files_removed: int = 0
    files_tombstoned: int = 0
    folders_gone: int = 0
    errors: int = 0
    duration_seconds: float = 0.0

    def __str__(self) -> str:
        return (
            f"Observed {self.files_seen} files "
            f"({self.files_indexed} indexed, "
            f"{self.files_unchanged} unchanged, "
            f"{self.files_needs_review} need review, "
            f"{self.files_removed + self.files_tombstoned} deleted, "
            f"{self.errors} errors) "
            f"in {self.duration_seconds:.1f}s"
        )
