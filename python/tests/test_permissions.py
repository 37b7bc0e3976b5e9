"""
Permission Mirror Tests - Verify fail-closed access snapshots.
"""

import pytest

from driveindex.errors import SnapshotNotFound
from driveindex.permissions import PermissionMirror


class TestPermissionMirror:
    """Tests for snapshot storage and authorization checks."""

    def test_missing_snapshot_denies(self, mirror):
        """A file without a snapshot is invisible to everyone."""
        assert not mirror.is_authorized("f1", "alice")
        with pytest.raises(SnapshotNotFound):
            mirror.get("f1")

    def test_upsert_grants_listed_principals(self, mirror):
        """Only principals in the snapshot are authorized."""
        mirror.upsert("f1", {"alice", "teachers@school.org"}, "1")

        assert mirror.is_authorized("f1", "alice")
        assert mirror.is_authorized("f1", "teachers@school.org")
        assert not mirror.is_authorized("f1", "mallory")

    def test_empty_principal_denied(self, mirror):
        """An anonymous caller never passes the check."""
        mirror.upsert("f1", {"alice"}, "1")
        assert not mirror.is_authorized("f1", "")

    def test_public_principal_grants_everyone(self, mirror):
        """A file shared with 'anyone' is readable by any principal."""
        mirror.upsert("f1", {"anyone"}, "1")

        assert mirror.is_authorized("f1", "alice")
        assert mirror.is_authorized("f1", "stranger@example.com")

    def test_upsert_replaces_whole_set(self, mirror):
        """A newer snapshot drops principals that lost access."""
        mirror.upsert("f1", {"alice", "bob"}, "1")
        mirror.upsert("f1", {"bob"}, "2")

        assert not mirror.is_authorized("f1", "alice")
        assert mirror.is_authorized("f1", "bob")

    def test_older_revision_is_ignored(self, mirror):
        """A late snapshot for an older revision cannot overwrite a newer one."""
        mirror.upsert("f1", {"bob"}, "10")
        assert mirror.upsert("f1", {"alice"}, "9") is None

        assert mirror.get("f1").principals == frozenset({"bob"})
        assert mirror.get("f1").revision_token == "10"

    def test_snapshot_older_than_asset_denies(self, mirror):
        """A snapshot captured for an older revision than the served asset denies."""
        mirror.upsert("f1", {"alice"}, "1")

        assert mirror.is_authorized("f1", "alice", min_revision="1")
        assert not mirror.is_authorized("f1", "alice", min_revision="2")

    def test_invalidate_denies_until_refreshed(self, mirror):
        """An invalidated snapshot denies access."""
        mirror.upsert("f1", {"alice"}, "1")

        assert mirror.invalidate("f1")
        assert not mirror.is_authorized("f1", "alice")
        assert not mirror.invalidate("f1")

    def test_batch_authorization(self, mirror):
        """authorized() keeps only readable ids."""
        mirror.upsert("a", {"alice"}, "1")
        mirror.upsert("b", {"bob"}, "1")
        mirror.upsert("c", {"anyone"}, "1")

        assert mirror.authorized(["a", "b", "c", "missing"], "alice") == {"a", "c"}

    def test_snapshots_survive_restart(self, db, test_config, mirror):
        """A fresh mirror over the same database sees earlier snapshots."""
        mirror.upsert("f1", {"alice"}, "3")

        reopened = PermissionMirror(db, test_config)
        assert reopened.is_authorized("f1", "alice", min_revision="3")
        assert len(reopened) == 1
