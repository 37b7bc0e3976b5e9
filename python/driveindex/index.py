"""
Search Index - Faceted, access-filtered index over Assets.

Assets are persisted in SQLite and mirrored into in-memory inverted indexes:

    facet postings:  facet -> value -> {file_id}
    term postings:   term  -> {file_id: weighted term frequency}

Query order:
    1. Facet filters (conjunctive pre-filter, smallest posting set first)
    2. Free-text scoring (weighted tf * idf, ranked with numpy)
    3. Permission filter via the Permission Mirror (always, never cached)
"""

import json
import logging
import math
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Set, Tuple

import numpy as np

from .config import get_config, EngineConfig
from .database import Database
from .models import (
    Asset, Confidence, Facet, IndexState, is_newer_revision, utcnow,
)
from .permissions import PermissionMirror
from .taxonomy import split_path


logger = logging.getLogger(__name__)


_TOKEN = re.compile(r"[0-9a-z]+")


def tokenize(text: Optional[str]) -> List[str]:
    """Lowercase alphanumeric terms."""
    return _TOKEN.findall((text or "").casefold())


def normalize_scope_path(path: Optional[str]) -> str:
    """'/a/b/' -> '/a/b'; empty or '/' -> '/'."""
    segments = split_path(path or "")
    return "/" + "/".join(segments)


def is_under(path: str, scope_path: str) -> bool:
    scope = normalize_scope_path(scope_path)
    if scope == "/":
        return True
    return normalize_scope_path(path).startswith(scope + "/")


@dataclass
class QueryPage:
    """Ranked, permission-filtered page of assets."""
    hits: List[Tuple[Asset, float]]
    total: int


class SearchIndex:
    """
    Faceted inverted index with durable backing rows.

    Upserts are atomic per file: the row is committed first, then the
    in-memory postings are swapped under the same lock the readers take.
    """

    def __init__(
        self,
        db: Database,
        mirror: PermissionMirror,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or get_config()
        self._db = db
        self._mirror = mirror
        self._loaded = False

        self._assets: Dict[str, Asset] = {}
        self._live: Set[str] = set()
        self._facets: Dict[str, Dict[str, Set[str]]] = defaultdict(lambda: defaultdict(set))
        self._terms: Dict[str, Dict[str, float]] = defaultdict(dict)
        self._doc_terms: Dict[str, Dict[str, float]] = {}
        self._tag_terms: Dict[str, Set[str]] = {}

    # ─────────────────────────────────────────────────────────────
    # Loading
    # ─────────────────────────────────────────────────────────────

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        with self._db.lock:
            if self._loaded:
                return
            rows = self._db.query("SELECT * FROM assets")
            for row in rows:
                asset = self._from_row(row)
                self._assets[asset.file_id] = asset
                if asset.is_servable:
                    self._add_postings(asset)
            self._loaded = True
            logger.info(f"Loaded {len(self._assets)} assets ({len(self._live)} servable)")

    def _from_row(self, row) -> Asset:
        return Asset(
            file_id=row["file_id"],
            path=row["path"],
            name=row["name"],
            revision_token=row["revision_token"],
            tags=json.loads(row["tags"]),
            intrinsic_metadata=json.loads(row["intrinsic_metadata"]),
            index_state=IndexState(row["index_state"]),
            confidence=Confidence(row["confidence"]),
            indexed_at=datetime.fromisoformat(row["indexed_at"]) if row["indexed_at"] else None,
        )

    # ─────────────────────────────────────────────────────────────
    # Write path
    # ─────────────────────────────────────────────────────────────

    def get(self, file_id: str) -> Optional[Asset]:
        self._ensure_loaded()
        return self._assets.get(file_id)

    def upsert(self, asset: Asset) -> bool:
        """
        Insert or replace an asset.

        Last writer wins by revision token: an older revision is ignored, an
        equal revision only replaces a deleted record (restoring it).
        Returns True if the index changed.
        """
        self._ensure_loaded()
        with self._db.lock:
            current = self._assets.get(asset.file_id)
            if current is not None and not is_newer_revision(asset.revision_token, current.revision_token):
                same = asset.revision_token == current.revision_token
                if not (same and current.index_state is IndexState.DELETED):
                    logger.debug(
                        f"Stale upsert for {asset.file_id}: "
                        f"{asset.revision_token} <= {current.revision_token}"
                    )
                    return False

            if asset.indexed_at is None:
                asset.indexed_at = utcnow()
            self._write_row(asset)

            if current is not None:
                self._remove_postings(current)
            self._assets[asset.file_id] = asset
            if asset.is_servable:
                self._add_postings(asset)
            return True

    def remove(self, file_id: str, revision_token: Optional[str] = None) -> bool:
        """
        Soft-delete an asset (kept for audit, excluded from queries).

        With a revision token, the removal is ignored if the stored asset
        is already at a newer revision.
        """
        self._ensure_loaded()
        with self._db.lock:
            current = self._assets.get(file_id)
            if current is None or current.index_state is IndexState.DELETED:
                return False
            if revision_token is not None and is_newer_revision(current.revision_token, revision_token):
                logger.debug(f"Ignoring removal of {file_id}@{revision_token}: have {current.revision_token}")
                return False

            tombstone = current.tombstoned(revision_token)
            self._write_row(tombstone)
            self._remove_postings(current)
            self._assets[file_id] = tombstone
            return True

    def _write_row(self, asset: Asset) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO assets (file_id, path, name, revision_token, tags, intrinsic_metadata,
                                    index_state, confidence, indexed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(file_id) DO UPDATE SET
                    path = excluded.path,
                    name = excluded.name,
                    revision_token = excluded.revision_token,
                    tags = excluded.tags,
                    intrinsic_metadata = excluded.intrinsic_metadata,
                    index_state = excluded.index_state,
                    confidence = excluded.confidence,
                    indexed_at = excluded.indexed_at
                """,
                (
                    asset.file_id,
                    asset.path,
                    asset.name,
                    asset.revision_token,
                    json.dumps(asset.tags, sort_keys=True),
                    json.dumps(asset.intrinsic_metadata, sort_keys=True, default=str),
                    asset.index_state.value,
                    asset.confidence.value,
                    asset.indexed_at.isoformat() if asset.indexed_at else None,
                ),
            )

    def _weighted_terms(self, asset: Asset) -> Dict[str, float]:
        weights = self.config.ranking
        terms: Dict[str, float] = defaultdict(float)
        for term in tokenize(asset.name):
            terms[term] += weights.name
        for key, value in asset.tags.items():
            if key == Facet.FILE_TYPE.value:
                continue
            for term in tokenize(value):
                terms[term] += weights.tags
        for segment in split_path(asset.path)[:-1]:
            for term in tokenize(segment):
                terms[term] += weights.path
        for term in tokenize(asset.intrinsic_metadata.get("authorName")):
            terms[term] += weights.author
        return dict(terms)

    def _add_postings(self, asset: Asset) -> None:
        fid = asset.file_id
        self._live.add(fid)
        for facet, value in asset.tags.items():
            self._facets[facet][str(value).casefold()].add(fid)
        doc_terms = self._weighted_terms(asset)
        for term, weight in doc_terms.items():
            self._terms[term][fid] = weight
        self._doc_terms[fid] = doc_terms
        self._tag_terms[fid] = {
            t for k, v in asset.tags.items() if k != Facet.FILE_TYPE.value for t in tokenize(v)
        }

    def _remove_postings(self, asset: Asset) -> None:
        fid = asset.file_id
        if fid not in self._live:
            return
        self._live.discard(fid)
        for facet, value in asset.tags.items():
            bucket = self._facets[facet].get(str(value).casefold())
            if bucket is not None:
                bucket.discard(fid)
                if not bucket:
                    del self._facets[facet][str(value).casefold()]
        for term in self._doc_terms.pop(fid, {}):
            postings = self._terms.get(term)
            if postings is not None:
                postings.pop(fid, None)
                if not postings:
                    del self._terms[term]
        self._tag_terms.pop(fid, None)

    # ─────────────────────────────────────────────────────────────
    # Scope helpers
    # ─────────────────────────────────────────────────────────────

    def ids_under(
        self,
        scope_path: str,
        include_deleted: bool = False,
        indexed_before: Optional[datetime] = None,
    ) -> Set[str]:
        """
        File ids whose current path lies under `scope_path`.

        With `indexed_before`, only assets last written no later than that moment
        are returned; assets without an `indexed_at` count as older.
        """
        self._ensure_loaded()
        with self._db.lock:
            return {
                fid for fid, asset in self._assets.items()
                if (include_deleted or asset.index_state is not IndexState.DELETED)
                and is_under(asset.path, scope_path)
                and (
                    indexed_before is None
                    or asset.indexed_at is None
                    or asset.indexed_at <= indexed_before
                )
            }

    def count_under(self, scope_path: str) -> int:
        """Servable assets under a scope."""
        self._ensure_loaded()
        with self._db.lock:
            return sum(1 for fid in self._live if is_under(self._assets[fid].path, scope_path))

    def __len__(self) -> int:
        self._ensure_loaded()
        return len(self._live)

    # ─────────────────────────────────────────────────────────────
    # Query path
    # ─────────────────────────────────────────────────────────────

    def query(
        self,
        free_text: str,
        facet_filters: Mapping[str, str],
        principal: str,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> QueryPage:
        """Rank and permission-filter assets for one principal."""
        self._ensure_loaded()
        page = max(1, page)
        page_size = max(1, min(page_size or self.config.default_page_size, self.config.max_page_size))
        terms = list(dict.fromkeys(tokenize(free_text)))

        with self._db.lock:
            # 1. Facet pre-filter
            candidates = self._facet_candidates(facet_filters)
            if candidates is None:
                candidates = self._text_candidates(terms) if terms else set(self._live)
            if not candidates:
                return QueryPage(hits=[], total=0)

            # 2. Text scoring
            ranked = self._rank(candidates, terms)

            # 3. Permission filter (last, mandatory)
            allowed = self._mirror.authorized(
                (fid for fid, _ in ranked),
                principal,
                {fid: self._assets[fid].revision_token for fid, _ in ranked},
            )
            visible = [(fid, score) for fid, score in ranked if fid in allowed]

            start = (page - 1) * page_size
            hits = [(self._assets[fid], score) for fid, score in visible[start:start + page_size]]
            return QueryPage(hits=hits, total=len(visible))

    def _facet_candidates(self, facet_filters: Mapping[str, str]) -> Optional[Set[str]]:
        """Intersection of facet postings, or None when there are no filters."""
        active = {k: v for k, v in facet_filters.items() if v not in (None, "")}
        if not active:
            return None

        postings: List[Set[str]] = []
        for facet, value in active.items():
            bucket = self._facets.get(facet, {}).get(str(value).casefold())
            if not bucket:
                return set()
            postings.append(bucket)

        postings.sort(key=len)
        result = set(postings[0])
        for bucket in postings[1:]:
            result &= bucket
            if not result:
                break
        return result

    def _text_candidates(self, terms: List[str]) -> Set[str]:
        result: Set[str] = set()
        for term in terms:
            result.update(self._terms.get(term, {}))
        return result

    def _rank(self, candidates: Set[str], terms: List[str]) -> List[Tuple[str, float]]:
        # Pre-order by recency then id; the stable argsort keeps it for ties
        ids = sorted(
            candidates,
            key=lambda fid: (-self._timestamp(self._assets[fid]), fid),
        )
        scores = np.zeros(len(ids), dtype=np.float64)

        if terms:
            position = {fid: i for i, fid in enumerate(ids)}
            n_docs = max(1, len(self._live))
            bonus = self.config.ranking.facet_match
            for term in terms:
                postings = self._terms.get(term)
                if not postings:
                    continue
                idf = math.log(1.0 + n_docs / (1.0 + len(postings)))
                # Walk whichever side is smaller
                if len(postings) <= len(position):
                    pairs = ((position[fid], w) for fid, w in postings.items() if fid in position)
                else:
                    pairs = ((i, postings[fid]) for fid, i in position.items() if fid in postings)
                for i, weight in pairs:
                    scores[i] += weight * idf
                    if term in self._tag_terms.get(ids[i], ()):
                        scores[i] += bonus

        order = np.argsort(-scores, kind="stable")
        return [(ids[i], float(scores[i])) for i in order]

    @staticmethod
    def _timestamp(asset: Asset) -> float:
        return asset.indexed_at.timestamp() if asset.indexed_at else 0.0
