"""
Permission Mirror - Per-file access-control snapshots.

Written only by the orchestrator during an observation, read on every query.
Missing or outdated snapshots deny access: the mirror fails closed.
"""

import json
import logging
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional, Set

from .config import get_config, EngineConfig
from .database import Database
from .errors import SnapshotNotFound
from .models import PermissionSnapshot, is_newer_revision, revision_key, utcnow


logger = logging.getLogger(__name__)


class PermissionMirror:
    """
    Durable principal sets keyed by file id.

    Every snapshot is cached in memory; the cache entry is swapped only after
    the database write commits, so readers never observe a half-written set.
    """

    def __init__(self, db: Database, config: Optional[EngineConfig] = None):
        self.config = config or get_config()
        self._db = db
        self._cache: Optional[Dict[str, PermissionSnapshot]] = None

    def _snapshots(self) -> Dict[str, PermissionSnapshot]:
        if self._cache is None:
            cache: Dict[str, PermissionSnapshot] = {}
            for row in self._db.query(
                "SELECT file_id, principals, captured_at, revision_token FROM permission_snapshots"
            ):
                cache[row["file_id"]] = PermissionSnapshot(
                    file_id=row["file_id"],
                    principals=frozenset(json.loads(row["principals"])),
                    captured_at=datetime.fromisoformat(row["captured_at"]),
                    revision_token=row["revision_token"],
                )
            self._cache = cache
            logger.debug(f"Loaded {len(cache)} permission snapshots")
        return self._cache

    def upsert(
        self,
        file_id: str,
        principals: Iterable[str],
        revision_token: Optional[str] = None,
    ) -> Optional[PermissionSnapshot]:
        """
        Atomically replace a file's principal set.

        Returns the stored snapshot, or None if a snapshot captured for a
        newer revision is already present.
        """
        with self._db.lock:
            snapshots = self._snapshots()
            current = snapshots.get(file_id)
            if (
                current is not None
                and revision_token is not None
                and current.revision_token is not None
                and is_newer_revision(current.revision_token, revision_token)
            ):
                logger.debug(
                    f"Ignoring permissions for {file_id}@{revision_token}: "
                    f"have {current.revision_token}"
                )
                return None

            snapshot = PermissionSnapshot(
                file_id=file_id,
                principals=frozenset(principals),
                captured_at=utcnow(),
                revision_token=revision_token,
            )
            with self._db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO permission_snapshots (file_id, principals, captured_at, revision_token)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(file_id) DO UPDATE SET
                        principals = excluded.principals,
                        captured_at = excluded.captured_at,
                        revision_token = excluded.revision_token
                    """,
                    (
                        file_id,
                        json.dumps(sorted(snapshot.principals)),
                        snapshot.captured_at.isoformat(),
                        revision_token,
                    ),
                )
            snapshots[file_id] = snapshot
            return snapshot

    def get(self, file_id: str) -> PermissionSnapshot:
        """Return the snapshot for a file, or raise SnapshotNotFound."""
        snapshot = self._snapshots().get(file_id)
        if snapshot is None:
            raise SnapshotNotFound(file_id)
        return snapshot

    def invalidate(self, file_id: str) -> bool:
        """
        Drop a snapshot that could not be refreshed.

        The file stops being served until a later observation captures its
        permissions again.
        """
        with self._db.lock:
            snapshots = self._snapshots()
            if file_id not in snapshots:
                return False
            with self._db.transaction() as conn:
                conn.execute("DELETE FROM permission_snapshots WHERE file_id = ?", (file_id,))
            del snapshots[file_id]
            logger.warning(f"Invalidated permission snapshot for {file_id}")
            return True

    def is_authorized(
        self,
        file_id: str,
        principal: str,
        min_revision: Optional[str] = None,
    ) -> bool:
        """
        True if `principal` may read the file.

        With `min_revision`, a snapshot captured for an older revision than
        the asset being served denies access.
        """
        snapshot = self._snapshots().get(file_id)
        if snapshot is None or not principal:
            return False
        if min_revision is not None and (
            snapshot.revision_token is None
            or revision_key(snapshot.revision_token) < revision_key(min_revision)
        ):
            return False
        return (
            principal in snapshot.principals
            or self.config.public_principal in snapshot.principals
        )

    def authorized(
        self,
        file_ids: Iterable[str],
        principal: str,
        min_revisions: Optional[Mapping[str, str]] = None,
    ) -> Set[str]:
        """Batch form of is_authorized used by the query engine."""
        min_revisions = min_revisions or {}
        return {
            fid for fid in file_ids
            if self.is_authorized(fid, principal, min_revisions.get(fid))
        }

    def __len__(self) -> int:
        return len(self._snapshots())
