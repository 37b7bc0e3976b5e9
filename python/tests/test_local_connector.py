"""
Local Connector Tests - Verify a directory tree exposed as a drive.

Tests:
- Listing with skip patterns
- Inode-based identity and revisions
- `.principals` sidecar inheritance
- Filesystem events translated into change events
- End-to-end crawl of a real directory
"""

import asyncio
import os
import time
from pathlib import Path

import pytest

from driveindex.connectors.local import LocalDriveConnector, read_principals
from driveindex.errors import FileGoneError
from driveindex.models import FOLDER_MIME_TYPE, ChangeType, IndexState, JobState, is_newer_revision
from driveindex.orchestrator import Orchestrator


@pytest.fixture
def drive_root(temp_dir: Path) -> Path:
    """A small drive folder with a lesson tree and files to skip."""
    root = temp_dir / "drive"
    lesson = root / "Subjects" / "English" / "Grade 4" / "Lesson - 'Nature'" / "Part - 'Intro'"
    lesson.mkdir(parents=True)
    (lesson / "clip.mp4").write_bytes(b"\x00\x00\x00\x18ftypmp42")
    (lesson / "worksheet.pdf").write_bytes(b"%PDF-1.4")

    math = root / "Subjects" / "Math" / "Grade 2"
    math.mkdir(parents=True)
    (math / "fractions.pdf").write_bytes(b"%PDF-1.4")

    (root / ".principals").write_text("alice\n# staff only\n")
    (root / "Subjects" / "English" / ".principals").write_text('["english-teachers"]')

    (root / ".DS_Store").write_bytes(b"junk")
    (root / "node_modules").mkdir()
    (root / "node_modules" / "index.js").write_text("//")
    return root


@pytest.fixture
def connector(drive_root, test_config):
    return LocalDriveConnector(drive_root, test_config)


async def list_all(connector, folder_id="root"):
    return [entry async for entry in connector.list_folder(folder_id)]


async def find(connector, relative_path):
    """Walk the listing down to an entry by its drive path."""
    folder_id = "root"
    entry = None
    for part in [p for p in relative_path.split("/") if p]:
        entry = next(e for e in await list_all(connector, folder_id) if e.name == part)
        folder_id = entry.file_id
    return entry


class TestListing:
    """Folder enumeration."""

    @pytest.mark.asyncio
    async def test_root_listing_skips_hidden_and_vendor_dirs(self, connector):
        """Only visible content is listed."""
        entries = await list_all(connector)

        assert [e.name for e in entries] == ["Subjects"]
        assert entries[0].mime_type == FOLDER_MIME_TYPE
        assert entries[0].path == "/Subjects"
        assert entries[0].parent_id == "root"

    @pytest.mark.asyncio
    async def test_file_entries(self, connector):
        """Files carry their drive path, MIME type and revision."""
        entry = await find(connector, "/Subjects/Math/Grade 2/fractions.pdf")

        assert entry.path == "/Subjects/Math/Grade 2/fractions.pdf"
        assert entry.mime_type == "application/pdf"
        assert not entry.is_folder
        assert entry.revision_token.isdigit()

    @pytest.mark.asyncio
    async def test_missing_folder(self, connector):
        """An unknown folder id is reported as gone."""
        with pytest.raises(FileGoneError):
            await list_all(connector, "0-0")


class TestIdentityAndMetadata:
    """File ids, revisions and metadata."""

    @pytest.mark.asyncio
    async def test_root_metadata(self, connector):
        """The root folder resolves to the drive path '/'."""
        meta = await connector.get_file_metadata("root")
        assert meta.path == "/"
        assert meta.mime_type == FOLDER_MIME_TYPE

    @pytest.mark.asyncio
    async def test_id_survives_rename(self, connector, drive_root, test_config):
        """Renaming keeps the id and advances the revision."""
        entry = await find(connector, "/Subjects/Math/Grade 2/fractions.pdf")
        old = drive_root / "Subjects" / "Math" / "Grade 2" / "fractions.pdf"
        new = old.with_name("fractions v2.pdf")
        old.rename(new)
        # Make the rename visible even on coarse timestamp filesystems
        future = time.time_ns() + 5_000_000_000
        os.utime(new, ns=(future, future))

        fresh = LocalDriveConnector(drive_root, test_config)
        moved = await find(fresh, "/Subjects/Math/Grade 2/fractions v2.pdf")

        assert moved.file_id == entry.file_id
        assert is_newer_revision(moved.revision_token, entry.revision_token)

    @pytest.mark.asyncio
    async def test_metadata_for_unlisted_id(self, connector, drive_root, test_config):
        """A fresh connector finds ids it has not listed yet."""
        entry = await find(connector, "/Subjects/Math/Grade 2/fractions.pdf")

        fresh = LocalDriveConnector(drive_root, test_config)
        meta = await fresh.get_file_metadata(entry.file_id)

        assert meta.path == entry.path
        assert meta.size_bytes == len(b"%PDF-1.4")
        assert meta.created_at is not None

    @pytest.mark.asyncio
    async def test_deleted_file_is_gone(self, connector, drive_root):
        """Metadata for a deleted file raises FileGoneError."""
        entry = await find(connector, "/Subjects/Math/Grade 2/fractions.pdf")
        (drive_root / "Subjects" / "Math" / "Grade 2" / "fractions.pdf").unlink()

        with pytest.raises(FileGoneError):
            await connector.get_file_metadata(entry.file_id)

    @pytest.mark.asyncio
    async def test_source_url(self, connector, drive_root):
        """Links point at the local file."""
        entry = await find(connector, "/Subjects/Math/Grade 2/fractions.pdf")
        url = connector.open_in_source_url(entry.file_id)

        assert url.startswith("file://")
        assert url.endswith("fractions.pdf")


class TestPermissions:
    """`.principals` sidecars."""

    @pytest.mark.asyncio
    async def test_principals_inherited_from_ancestors(self, connector):
        """A file gets the union of its folders' sidecars."""
        clip = await find(connector, "/Subjects/English/Grade 4/Lesson - 'Nature'/Part - 'Intro'/clip.mp4")
        fractions = await find(connector, "/Subjects/Math/Grade 2/fractions.pdf")

        assert await connector.get_permissions(clip.file_id) == {"alice", "english-teachers"}
        assert await connector.get_permissions(fractions.file_id) == {"alice"}

    @pytest.mark.asyncio
    async def test_default_principals(self, drive_root, test_config):
        """Default principals apply to every file."""
        connector = LocalDriveConnector(drive_root, test_config, default_principals=["anyone"])
        entry = await find(connector, "/Subjects/Math/Grade 2/fractions.pdf")

        assert "anyone" in await connector.get_permissions(entry.file_id)

    def test_read_principals_formats(self, temp_dir):
        """Sidecars may be JSON lists or one principal per line."""
        as_json = temp_dir / "a.principals"
        as_json.write_text('["alice", " bob ", ""]')
        as_lines = temp_dir / "b.principals"
        as_lines.write_text("# comment\nalice\n\n  carol  \n")

        assert read_principals(as_json) == {"alice", "bob"}
        assert read_principals(as_lines) == {"alice", "carol"}


class TestChangeEvents:
    """Filesystem events become change events."""

    @pytest.mark.asyncio
    async def test_created_and_deleted(self, connector, drive_root):
        """A new file yields ADDED; deleting it yields REMOVED with the same id."""
        connector._events = asyncio.Queue()
        path = drive_root / "Subjects" / "Math" / "Grade 2" / "decimals.pdf"
        path.write_bytes(b"%PDF")

        connector._translate(path, ChangeType.ADDED, False)
        added = connector._events.get_nowait()
        assert added.change_type is ChangeType.ADDED

        path.unlink()
        connector._translate(path, ChangeType.REMOVED, False)
        removed = connector._events.get_nowait()
        assert removed.file_id == added.file_id
        assert removed.change_type is ChangeType.REMOVED
        assert is_newer_revision(removed.revision_token, added.revision_token)

    @pytest.mark.asyncio
    async def test_skipped_paths_ignored(self, connector, drive_root):
        """Hidden files, vendor dirs and folders produce no events."""
        connector._events = asyncio.Queue()
        hidden = drive_root / ".notes"
        hidden.write_text("x")

        connector._translate(hidden, ChangeType.ADDED, False)
        connector._translate(drive_root / "node_modules" / "index.js", ChangeType.MODIFIED, False)
        connector._translate(drive_root / "Subjects", ChangeType.MODIFIED, True)

        assert connector._events.empty()


class TestLocalCrawl:
    """Full crawl of a real directory."""

    @pytest.mark.asyncio
    async def test_crawl_and_search(self, connector, drive_root, test_config):
        """A crawl indexes the tree and respects sidecar permissions."""
        orchestrator = Orchestrator(connector, test_config)
        try:
            job = await orchestrator.crawl()

            assert job.state is JobState.DONE
            hits = orchestrator.index.query("nature", {"subject": "English"}, "english-teachers").hits
            assert sorted(a.name for a, _ in hits) == ["clip.mp4", "worksheet.pdf"]
            assert orchestrator.index.query("", {"subject": "English"}, "bob").total == 0

            (drive_root / "Subjects" / "Math" / "Grade 2" / "fractions.pdf").unlink()
            await orchestrator.crawl()

            deleted = [
                a for a in orchestrator.index.query("", {}, "alice").hits
                if a[0].name == "fractions.pdf"
            ]
            assert deleted == []
            assert len(orchestrator.index) == 2
        finally:
            orchestrator.close()
