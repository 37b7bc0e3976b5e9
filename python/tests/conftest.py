"""
Test Configuration - Shared fixtures for engine tests.

Uses pytest fixtures to create isolated test environments and an in-memory
drive that tests can reshape and inject failures into.
"""

import shutil
import tempfile
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, Generator, List, Optional, Set, Tuple

import pytest

from driveindex.config import EngineConfig, set_config
from driveindex.connector import DriveConnector
from driveindex.database import Database
from driveindex.errors import FileGoneError
from driveindex.models import FOLDER_MIME_TYPE, ChangeEvent, DriveEntry, FileMetadata
from driveindex.orchestrator import Orchestrator
from driveindex.permissions import PermissionMirror


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="driveindex_test_")
    # Resolve to handle macOS /var -> /private/var symlink
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> EngineConfig:
    """Create an isolated test configuration with fast retries."""
    config = EngineConfig(
        db_path=temp_dir / "test.db",
        worker_count=2,
        file_concurrency=4,
        poll_interval_ms=10,
        rate_limit_per_s=10_000,
        rate_limit_burst=10_000,
        retry_max_attempts=3,
        retry_base_delay_s=0.001,
        retry_max_delay_s=0.005,
        ingest_batch_size=50,
        ingest_flush_ms=20,
    )
    set_config(config)
    return config


@pytest.fixture
def db(test_config: EngineConfig) -> Generator[Database, None, None]:
    database = Database(test_config)
    yield database
    database.close()


@pytest.fixture
def mirror(db: Database, test_config: EngineConfig) -> PermissionMirror:
    return PermissionMirror(db, test_config)


# ═══════════════════════════════════════════════════════════════════
# In-memory drive
# ═══════════════════════════════════════════════════════════════════

@dataclass
class FakeItem:
    file_id: str
    name: str
    parent_id: Optional[str]
    revision: str = "1"
    mime_type: str = "application/octet-stream"
    principals: Set[str] = field(default_factory=set)
    author: Optional[str] = None

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE


class FakeDriveConnector(DriveConnector):
    """
    Drive held in dictionaries.

    `fail(op, file_id, *errors)` queues exceptions raised by the next calls
    of that operation for that id ("list", "metadata", "permissions").
    """

    def __init__(self):
        self.items: Dict[str, FakeItem] = {
            "root": FakeItem("root", "", None, mime_type=FOLDER_MIME_TYPE),
        }
        self.changes: List[ChangeEvent] = []
        self.stream_errors: Dict[int, Exception] = {}
        self.calls: Counter = Counter()
        self._failures: Dict[Tuple[str, str], List[Exception]] = defaultdict(list)

    # --- Shaping the drive ---

    def add_folder(self, folder_id: str, name: str, parent_id: str = "root") -> str:
        self.items[folder_id] = FakeItem(folder_id, name, parent_id, mime_type=FOLDER_MIME_TYPE)
        return folder_id

    def add_file(
        self,
        file_id: str,
        name: str,
        parent_id: str = "root",
        revision: str = "1",
        principals=("alice",),
        mime_type: str = "application/octet-stream",
        author: Optional[str] = None,
    ) -> str:
        self.items[file_id] = FakeItem(
            file_id, name, parent_id, revision, mime_type, set(principals), author
        )
        return file_id

    def add_path(self, path: str, file_id: str, **kwargs) -> str:
        """Create the folders of `path` as needed and add the file."""
        *folders, name = [p for p in path.split("/") if p]
        parent = "root"
        for folder in folders:
            existing = next(
                (i for i in self.items.values()
                 if i.parent_id == parent and i.name == folder and i.is_folder),
                None,
            )
            parent = existing.file_id if existing else self.add_folder(f"{parent}/{folder}", folder, parent)
        return self.add_file(file_id, name, parent, **kwargs)

    def update(self, file_id: str, **changes) -> None:
        item = self.items[file_id]
        for key, value in changes.items():
            setattr(item, key, set(value) if key == "principals" else value)

    def delete(self, file_id: str) -> None:
        del self.items[file_id]

    def fail(self, op: str, file_id: str, *errors: Exception) -> None:
        self._failures[(op, file_id)].extend(errors)

    def path_of(self, file_id: str) -> str:
        parts = []
        item = self.items[file_id]
        while item.parent_id is not None:
            parts.append(item.name)
            item = self.items[item.parent_id]
        return "/" + "/".join(reversed(parts))

    def _maybe_fail(self, op: str, file_id: str) -> None:
        self.calls[op] += 1
        queued = self._failures.get((op, file_id))
        if queued:
            raise queued.pop(0)

    def _get(self, file_id: str) -> FakeItem:
        item = self.items.get(file_id)
        if item is None:
            raise FileGoneError(file_id)
        return item

    # --- DriveConnector ---

    async def list_folder(self, folder_id: str) -> AsyncIterator[DriveEntry]:
        self._maybe_fail("list", folder_id)
        self._get(folder_id)
        children = sorted(
            (i for i in self.items.values() if i.parent_id == folder_id),
            key=lambda i: i.name,
        )
        for item in children:
            yield DriveEntry(
                file_id=item.file_id,
                name=item.name,
                path=self.path_of(item.file_id),
                revision_token=item.revision,
                mime_type=item.mime_type,
                parent_id=folder_id,
            )

    async def get_file_metadata(self, file_id: str) -> FileMetadata:
        self._maybe_fail("metadata", file_id)
        item = self._get(file_id)
        return FileMetadata(
            file_id=item.file_id,
            name=item.name,
            path=self.path_of(item.file_id),
            revision_token=item.revision,
            mime_type=item.mime_type,
            author_name=item.author,
            parent_id=item.parent_id,
        )

    async def get_permissions(self, file_id: str) -> Set[str]:
        self._maybe_fail("permissions", file_id)
        return set(self._get(file_id).principals)

    async def subscribe_changes(self, cursor: Optional[str]) -> AsyncIterator[Tuple[str, ChangeEvent]]:
        self.calls["subscribe"] += 1
        position = int(cursor) if cursor else 0
        while position < len(self.changes):
            error = self.stream_errors.pop(position, None)
            if error is not None:
                raise error
            event = self.changes[position]
            position += 1
            yield str(position), event

    def open_in_source_url(self, file_id: str) -> str:
        return f"https://drive.example/file/{file_id}"


@pytest.fixture
def drive() -> FakeDriveConnector:
    return FakeDriveConnector()


@pytest.fixture
def orchestrator(drive: FakeDriveConnector, test_config: EngineConfig) -> Generator[Orchestrator, None, None]:
    orch = Orchestrator(drive, test_config)
    yield orch
    orch.close()


