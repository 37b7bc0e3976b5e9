"""
Search Index Tests - Verify faceted ranking, permission filtering and soft deletes.
"""

from datetime import timedelta

import pytest

from driveindex.index import SearchIndex, is_under, normalize_scope_path, tokenize
from driveindex.models import Asset, Confidence, IndexState, SearchQuery, utcnow
from driveindex.search import SearchService, parse_facet_args


def make_asset(file_id, path, revision="1", tags=None, state=IndexState.INDEXED, author=None):
    return Asset(
        file_id=file_id,
        path=path,
        name=path.rsplit("/", 1)[-1],
        revision_token=revision,
        tags=tags or {},
        intrinsic_metadata={"authorName": author},
        index_state=state,
        confidence=Confidence.FULL if tags else Confidence.UNSTRUCTURED,
    )


@pytest.fixture
def index(db, mirror, test_config):
    return SearchIndex(db, mirror, test_config)


def add(index, mirror, asset, principals=("alice",)):
    mirror.upsert(asset.file_id, principals, asset.revision_token)
    assert index.upsert(asset)
    return asset


ENGLISH_4 = {"subject": "English", "gradeLevel": "Grade 4"}


class TestRanking:
    """Facet filtering and free-text scoring."""

    def test_facets_filter_and_text_ranks(self, index, mirror):
        """Facets restrict candidates; the name match ranks first."""
        add(index, mirror, make_asset(
            "clip", "/Subjects/English/Grade 4/Lesson - 'Nature'/nature_intro.mp4",
            tags={**ENGLISH_4, "lesson": "Nature", "fileType": "video"},
        ))
        add(index, mirror, make_asset(
            "sheet", "/Subjects/English/Grade 4/Lesson - 'Nature'/worksheet.pdf",
            tags={**ENGLISH_4, "lesson": "Nature", "fileType": "document"},
        ))
        add(index, mirror, make_asset(
            "math", "/Subjects/Math/Grade 4/nature_numbers.pdf",
            tags={"subject": "Math", "gradeLevel": "Grade 4", "fileType": "document"},
        ))

        page = index.query("nature", {"subject": "English"}, "alice")

        assert [a.file_id for a, _ in page.hits] == ["clip", "sheet"]
        assert page.total == 2
        assert page.hits[0][1] > page.hits[1][1]

    def test_grade_facet_with_garden_text(self, index, mirror):
        """The garden video outranks an unrelated Grade 4 file, for allowed principals only."""
        video = add(index, mirror, make_asset(
            "video",
            "/Subjects/English/Grade 4/Lesson - 'Nature and Environment'"
            "/Part - 'A Walk in the Garden'/video.mp4",
            tags={
                **ENGLISH_4, "lesson": "Nature and Environment",
                "lessonPart": "A Walk in the Garden", "fileType": "video",
            },
        ))
        add(index, mirror, make_asset(
            "spelling", "/Subjects/English/Grade 4/spelling list.pdf",
            tags={**ENGLISH_4, "fileType": "document"},
        ))

        page = index.query("garden", {"gradeLevel": "Grade 4"}, "alice")
        assert [a.file_id for a, _ in page.hits] == [video.file_id, "spelling"]
        assert page.hits[0][1] > page.hits[1][1]

        assert index.query("garden", {"gradeLevel": "Grade 4"}, "mallory").hits == []

    def test_facet_values_match_case_insensitively(self, index, mirror):
        """Facet filters ignore case."""
        add(index, mirror, make_asset("a", "/Subjects/English/a.pdf", tags={"subject": "English"}))
        assert index.query("", {"subject": "english"}, "alice").total == 1

    def test_unknown_facet_value_matches_nothing(self, index, mirror):
        """A filter no asset carries yields an empty page."""
        add(index, mirror, make_asset("a", "/Subjects/English/a.pdf", tags={"subject": "English"}))
        assert index.query("", {"subject": "Latin"}, "alice").total == 0

    def test_text_only_filters_by_terms(self, index, mirror):
        """Without facets, free text selects matching assets."""
        add(index, mirror, make_asset("a", "/Docs/volcano.pdf"))
        add(index, mirror, make_asset("b", "/Docs/glacier.pdf"))

        page = index.query("volcano", {}, "alice")
        assert [a.file_id for a, _ in page.hits] == ["a"]

    def test_author_is_searchable(self, index, mirror):
        """Author names contribute terms."""
        add(index, mirror, make_asset("a", "/Docs/plan.pdf", author="Ms Rivera"))
        assert index.query("rivera", {}, "alice").total == 1

    def test_no_filters_returns_all_visible(self, index, mirror):
        """An empty query lists everything the principal may see."""
        add(index, mirror, make_asset("a", "/Docs/a.pdf"))
        add(index, mirror, make_asset("b", "/Docs/b.pdf"))
        assert index.query("", {}, "alice").total == 2

    def test_paging(self, index, mirror):
        """Pages are 1-based slices of the ranked list."""
        for i in range(5):
            add(index, mirror, make_asset(f"f{i}", f"/Docs/report {i}.pdf"))

        first = index.query("report", {}, "alice", page=1, page_size=2)
        third = index.query("report", {}, "alice", page=3, page_size=2)

        assert len(first.hits) == 2
        assert len(third.hits) == 1
        assert first.total == third.total == 5

    @pytest.mark.parametrize("page_size", [-1, -5])
    def test_negative_page_size_clamped(self, index, mirror, page_size):
        """A negative page size yields one hit per page."""
        for i in range(3):
            add(index, mirror, make_asset(f"f{i}", f"/Docs/report {i}.pdf"))

        page = index.query("report", {}, "alice", page=1, page_size=page_size)

        assert len(page.hits) == 1
        assert page.total == 3


class TestPermissionFiltering:
    """No result ever leaks to an unauthorized principal."""

    def test_unauthorized_principal_sees_nothing(self, index, mirror):
        """Assets shared with someone else are filtered out, totals included."""
        add(index, mirror, make_asset("a", "/Docs/secret.pdf"), principals=("bob",))

        page = index.query("secret", {}, "alice")
        assert page.hits == []
        assert page.total == 0

    def test_missing_snapshot_hides_asset(self, index):
        """An asset without any snapshot is never served."""
        index.upsert(make_asset("a", "/Docs/a.pdf"))
        assert index.query("", {}, "alice").total == 0

    def test_stale_snapshot_hides_asset(self, index, mirror):
        """A snapshot older than the served revision denies access."""
        mirror.upsert("a", {"alice"}, "1")
        index.upsert(make_asset("a", "/Docs/a.pdf", revision="2"))
        assert index.query("", {}, "alice").total == 0

    def test_public_files_visible_to_all(self, index, mirror):
        """The public principal opens a file to every caller."""
        add(index, mirror, make_asset("a", "/Docs/a.pdf"), principals=("anyone",))
        assert index.query("", {}, "whoever").total == 1


class TestWrites:
    """Revision monotonicity and soft deletes."""

    def test_older_revision_rejected(self, index, mirror):
        """An upsert older than the stored revision is ignored."""
        add(index, mirror, make_asset("a", "/Docs/new.pdf", revision="2"))

        assert not index.upsert(make_asset("a", "/Docs/old.pdf", revision="1"))
        assert index.get("a").path == "/Docs/new.pdf"

    def test_revisions_compare_naturally(self, index, mirror):
        """Revision '10' is newer than '9'."""
        add(index, mirror, make_asset("a", "/Docs/a.pdf", revision="9"))
        assert index.upsert(make_asset("a", "/Docs/a.pdf", revision="10"))

    def test_remove_is_soft(self, index, mirror):
        """Removed assets stay stored but leave every result."""
        add(index, mirror, make_asset("a", "/Docs/a.pdf", tags={"subject": "Art"}))

        assert index.remove("a")
        assert index.get("a").index_state is IndexState.DELETED
        assert index.query("", {"subject": "Art"}, "alice").total == 0
        assert len(index) == 0
        assert not index.remove("a")

    def test_removal_older_than_stored_ignored(self, index, mirror):
        """A late removal cannot delete a newer revision."""
        add(index, mirror, make_asset("a", "/Docs/a.pdf", revision="5"))
        assert not index.remove("a", "4")
        assert index.get("a").index_state is IndexState.INDEXED

    def test_same_revision_restores_tombstone(self, index, mirror):
        """A tombstoned file seen again at the same revision comes back."""
        add(index, mirror, make_asset("a", "/Docs/a.pdf"))
        index.remove("a")

        assert index.upsert(make_asset("a", "/Docs/a.pdf"))
        assert index.query("", {}, "alice").total == 1

    def test_needs_review_is_servable(self, index, mirror):
        """Unstructured assets are still searchable."""
        add(index, mirror, make_asset("a", "/Shared with me/random.docx", state=IndexState.NEEDS_REVIEW))
        assert index.query("random", {}, "alice").total == 1

    def test_reload_from_database(self, index, mirror, db, test_config):
        """A new index over the same database restores postings."""
        add(index, mirror, make_asset("a", "/Subjects/Art/a.pdf", tags={"subject": "Art"}))
        add(index, mirror, make_asset("b", "/Subjects/Art/b.pdf", tags={"subject": "Art"}))
        index.remove("b")

        reopened = SearchIndex(db, mirror, test_config)
        page = reopened.query("", {"subject": "Art"}, "alice")
        assert [a.file_id for a, _ in page.hits] == ["a"]
        assert reopened.ids_under("/Subjects", include_deleted=True) == {"a", "b"}


class TestScopeHelpers:
    """Path scoping used for tombstones and status counts."""

    def test_ids_under(self, index, mirror):
        """Only assets below the scope path are returned."""
        add(index, mirror, make_asset("a", "/Subjects/Art/a.pdf"))
        add(index, mirror, make_asset("b", "/Subjects Archive/b.pdf"))

        assert index.ids_under("/Subjects") == {"a"}
        assert index.ids_under("/") == {"a", "b"}
        assert index.count_under("/Subjects/") == 1

    def test_ids_under_indexed_before(self, index, mirror):
        """Assets written after the cutoff are left out."""
        old = make_asset("old", "/Subjects/Art/old.pdf")
        old.indexed_at = utcnow() - timedelta(minutes=5)
        add(index, mirror, old)
        cutoff = utcnow() - timedelta(minutes=1)
        add(index, mirror, make_asset("new", "/Subjects/Art/new.pdf"))

        assert index.ids_under("/Subjects", indexed_before=cutoff) == {"old"}
        assert index.ids_under("/Subjects") == {"old", "new"}

    def test_path_helpers(self):
        """Scope paths normalize trailing slashes and match on segments."""
        assert normalize_scope_path("/a/b/") == "/a/b"
        assert normalize_scope_path("") == "/"
        assert is_under("/a/b/c.pdf", "/a/b")
        assert not is_under("/a/bc/c.pdf", "/a/b")
        assert tokenize("Lesson - 'Nature' 2") == ["lesson", "nature", "2"]


class TestSearchService:
    """Query surface over the index."""

    def test_search_response(self, index, mirror, drive, test_config):
        """Hits carry tags, a rounded score and the source link."""
        add(index, mirror, make_asset("a", "/Subjects/Art/color.pdf", tags={"subject": "Art"}))
        service = SearchService(index, drive, test_config)

        response = service.search(SearchQuery(text="color", principal="alice"))

        assert response.total_approx == 1
        hit = response.results[0]
        assert hit.file_id == "a"
        assert hit.tags == {"subject": "Art"}
        assert hit.source_url == "https://drive.example/file/a"
        assert response.took_ms >= 0
        assert response.to_dict()["results"][0]["fileId"] == "a"

    def test_empty_principal_gets_nothing(self, index, mirror, drive, test_config):
        """Searching without a principal fails closed."""
        add(index, mirror, make_asset("a", "/Docs/a.pdf"), principals=("anyone",))
        service = SearchService(index, drive, test_config)

        assert service.search(SearchQuery(principal="")).results == []

    def test_parse_facet_args(self):
        """CLI facet filters parse into a mapping."""
        assert parse_facet_args(["subject=Art", "gradeLevel = Grade 4"]) == {
            "subject": "Art", "gradeLevel": "Grade 4",
        }
        with pytest.raises(ValueError):
            parse_facet_args(["subject"])
