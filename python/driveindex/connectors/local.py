"""
Local Drive Connector - A directory tree exposed as a file store.

Lets the engine crawl a synced drive folder (or any directory) and follow
its changes through watchdog. Identity is the inode, so a rename keeps the
file id and only advances the revision.

Access is declared with `.principals` sidecar files: a JSON list or one
principal per line. A file is readable by the union of the principals in
its folder and every ancestor folder up to the root.
"""

import asyncio
import json
import logging
import mimetypes
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, FrozenSet, Iterable, Optional, Set, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..config import get_config, EngineConfig
from ..connector import DriveConnector
from ..errors import FileGoneError
from ..models import FOLDER_MIME_TYPE, ChangeEvent, ChangeType, DriveEntry, FileMetadata


logger = logging.getLogger(__name__)


ROOT_ID = "root"
PRINCIPALS_FILE = ".principals"

SYSTEM_FILES = {".DS_Store", "Thumbs.db", "desktop.ini"}

SKIP_DIRS = {
    # Version control
    ".git", ".svn", ".hg",
    # Dependencies
    "node_modules", "__pycache__", ".venv", "venv",
    # macOS
    ".Trash",
    # Cache
    ".cache",
}


def revision_of(stat: os.stat_result) -> str:
    """ctime moves on rename and chmod, mtime on content edits."""
    return str(max(stat.st_mtime_ns, stat.st_ctime_ns))


def read_principals(path: Path) -> Set[str]:
    """Parse a `.principals` sidecar (JSON list or line-per-principal)."""
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return set()
    if text.startswith("["):
        return {str(p).strip() for p in json.loads(text) if str(p).strip()}
    return {
        line.strip()
        for line in text.splitlines()
        if line.strip() and not line.strip().startswith("#")
    }


class LocalDriveConnector(DriveConnector):
    """
    Connector over a local directory tree.

    The root folder has the id "root"; every other entry is identified by
    "<device>-<inode>".
    """

    def __init__(
        self,
        root: Path,
        config: Optional[EngineConfig] = None,
        default_principals: Iterable[str] = (),
    ):
        self.config = config or get_config()
        self.root = Path(root).expanduser().resolve()
        self.default_principals: FrozenSet[str] = frozenset(default_principals)

        self._paths: Dict[str, Path] = {ROOT_ID: self.root}
        self._ids: Dict[Path, str] = {self.root: ROOT_ID}

        self._observer: Optional[Observer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: Optional[asyncio.Queue] = None

    # ─────────────────────────────────────────────────────────────
    # Identity
    # ─────────────────────────────────────────────────────────────

    def _register(self, path: Path, stat: os.stat_result) -> str:
        file_id = ROOT_ID if path == self.root else f"{stat.st_dev}-{stat.st_ino}"
        old_path = self._paths.get(file_id)
        if old_path is not None and old_path != path:
            self._ids.pop(old_path, None)
        self._paths[file_id] = path
        self._ids[path] = file_id
        return file_id

    def _forget(self, path: Path) -> Optional[str]:
        file_id = self._ids.pop(path, None)
        if file_id is not None and self._paths.get(file_id) == path:
            del self._paths[file_id]
        return file_id

    def _locate(self, file_id: str) -> Path:
        """Absolute path of a known id, rescanning the tree once if unknown."""
        path = self._paths.get(file_id)
        if path is None:
            self._rebuild_ids()
            path = self._paths.get(file_id)
        if path is None or not path.exists():
            raise FileGoneError(file_id)
        return path

    def _rebuild_ids(self) -> None:
        logger.debug(f"Rebuilding id map for {self.root}")
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [d for d in dirnames if not self._should_skip_dir(d)]
            for name in dirnames + filenames:
                path = Path(dirpath) / name
                try:
                    self._register(path, path.stat(follow_symlinks=False))
                except OSError:
                    continue

    def relative_path(self, path: Path) -> str:
        """Drive-style path: "/" for the root, "/a/b.pdf" below it."""
        rel = path.relative_to(self.root).as_posix()
        return "/" if rel == "." else f"/{rel}"

    # ─────────────────────────────────────────────────────────────
    # Skip patterns
    # ─────────────────────────────────────────────────────────────

    def _should_skip_dir(self, name: str) -> bool:
        return name.startswith(".") or name in SKIP_DIRS

    def _should_skip_file(self, name: str) -> bool:
        return name in SYSTEM_FILES or name.startswith(".")

    def _should_skip_path(self, path: Path) -> bool:
        try:
            parts = path.relative_to(self.root).parts
        except ValueError:
            return True
        if not parts:
            return False
        return any(self._should_skip_dir(p) for p in parts[:-1]) or self._should_skip_file(parts[-1])

    # ─────────────────────────────────────────────────────────────
    # Listing and metadata
    # ─────────────────────────────────────────────────────────────

    async def list_folder(self, folder_id: str) -> AsyncIterator[DriveEntry]:
        directory = self._locate(folder_id)
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except FileNotFoundError:
            raise FileGoneError(folder_id)

        for entry in entries:
            is_dir = entry.is_dir(follow_symlinks=False)
            if is_dir and self._should_skip_dir(entry.name):
                continue
            if not is_dir and (not entry.is_file(follow_symlinks=False) or self._should_skip_file(entry.name)):
                continue

            try:
                stat = entry.stat(follow_symlinks=False)
            except FileNotFoundError:
                # Deleted between scandir and stat
                continue

            path = Path(entry.path)
            yield DriveEntry(
                file_id=self._register(path, stat),
                name=entry.name,
                path=self.relative_path(path),
                revision_token=revision_of(stat),
                mime_type=FOLDER_MIME_TYPE if is_dir else self._mime_type(path),
                parent_id=folder_id,
            )

    async def get_file_metadata(self, file_id: str) -> FileMetadata:
        path = self._locate(file_id)
        try:
            stat = path.stat(follow_symlinks=False)
        except FileNotFoundError:
            raise FileGoneError(file_id)

        is_dir = path.is_dir()
        parent_id = None
        if path != self.root:
            parent_id = self._ids.get(path.parent)

        return FileMetadata(
            file_id=file_id,
            name=path.name,
            path=self.relative_path(path),
            revision_token=revision_of(stat),
            mime_type=FOLDER_MIME_TYPE if is_dir else self._mime_type(path),
            author_name=self._owner(path),
            created_at=self._created_at(stat),
            size_bytes=None if is_dir else stat.st_size,
            parent_id=parent_id,
        )

    async def get_permissions(self, file_id: str) -> Set[str]:
        path = self._locate(file_id)
        principals = set(self.default_principals)

        folder = path if path.is_dir() else path.parent
        while True:
            sidecar = folder / PRINCIPALS_FILE
            if sidecar.is_file():
                principals |= read_principals(sidecar)
            if folder == self.root or folder == folder.parent:
                break
            folder = folder.parent

        return principals

    def open_in_source_url(self, file_id: str) -> str:
        path = self._paths.get(file_id)
        if path is None:
            try:
                path = self._locate(file_id)
            except FileGoneError:
                logger.debug(f"No local path for {file_id}")
                return self.root.as_uri()
        return path.as_uri()

    @staticmethod
    def _mime_type(path: Path) -> str:
        mime, _ = mimetypes.guess_type(path.name)
        return mime or "application/octet-stream"

    @staticmethod
    def _owner(path: Path) -> Optional[str]:
        try:
            return path.owner()
        except (KeyError, NotImplementedError, OSError):
            return None

    @staticmethod
    def _created_at(stat: os.stat_result) -> str:
        created = getattr(stat, "st_birthtime", stat.st_ctime)
        return datetime.fromtimestamp(created, tz=timezone.utc).isoformat()

    # ─────────────────────────────────────────────────────────────
    # Change stream
    # ─────────────────────────────────────────────────────────────

    async def subscribe_changes(self, cursor: Optional[str]) -> AsyncIterator[Tuple[str, ChangeEvent]]:
        """
        Follow filesystem events for as long as the caller iterates.

        The filesystem has no history, so changes made while nothing was
        watching are only picked up by the next full crawl. The cursor is a
        sequence number that keeps increasing across restarts.
        """
        seq = int(cursor) if cursor and cursor.isdigit() else 0
        self._start_observer()
        try:
            while True:
                event = await self._events.get()
                seq += 1
                yield str(seq), event
        finally:
            self._stop_observer()

    def _start_observer(self) -> None:
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()

        connector = self

        class EventHandler(FileSystemEventHandler):
            def on_created(self, event: FileSystemEvent):
                connector._from_thread(Path(event.src_path), ChangeType.ADDED, event.is_directory)

            def on_modified(self, event: FileSystemEvent):
                connector._from_thread(Path(event.src_path), ChangeType.MODIFIED, event.is_directory)

            def on_deleted(self, event: FileSystemEvent):
                connector._from_thread(Path(event.src_path), ChangeType.REMOVED, event.is_directory)

            def on_moved(self, event: FileSystemEvent):
                connector._from_thread(
                    Path(event.dest_path), ChangeType.MOVED, event.is_directory,
                    old_path=Path(event.src_path),
                )

        self._observer = Observer()
        self._observer.schedule(EventHandler(), str(self.root), recursive=True)
        self._observer.start()
        logger.info(f"Watching: {self.root}")

    def _stop_observer(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None
        logger.info("File watcher stopped")

    def _from_thread(
        self,
        path: Path,
        change_type: ChangeType,
        is_directory: bool,
        old_path: Optional[Path] = None,
    ) -> None:
        """Called on the watchdog thread; hands the event to the event loop."""
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._translate, path, change_type, is_directory, old_path)

    def _translate(
        self,
        path: Path,
        change_type: ChangeType,
        is_directory: bool,
        old_path: Optional[Path] = None,
    ) -> None:
        """Turn a filesystem event into a ChangeEvent on the loop thread."""
        if is_directory:
            if change_type is ChangeType.MOVED:
                logger.warning(f"Folder moved ({old_path} -> {path}); run a full crawl to refresh paths")
            return

        if path.name == PRINCIPALS_FILE:
            logger.warning(f"Sharing changed in {path.parent}; run a full crawl to refresh permissions")
            return
        if self._should_skip_path(path):
            return

        if change_type is ChangeType.REMOVED:
            file_id = self._forget(path)
            if file_id is None:
                return
            # The file has no stat left; deletion time orders after any edit
            self._events.put_nowait(ChangeEvent(file_id, str(time.time_ns()), ChangeType.REMOVED))
            return

        if old_path is not None:
            self._ids.pop(old_path, None)
        try:
            stat = path.stat(follow_symlinks=False)
        except FileNotFoundError:
            return
        file_id = self._register(path, stat)
        self._events.put_nowait(ChangeEvent(file_id, revision_of(stat), change_type))

    async def close(self) -> None:
        self._stop_observer()
