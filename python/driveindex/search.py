"""
Search - Query surface exposed to the search UI.

Wraps the index query with timing and source links.
"""

import logging
import time
from typing import Dict, Optional

from .config import get_config, EngineConfig
from .connector import DriveConnector
from .index import SearchIndex
from .models import SearchHit, SearchQuery, SearchResponse


logger = logging.getLogger(__name__)


class SearchService:
    """
    Faceted, access-filtered search.

    Every call is evaluated for its own principal; nothing is cached at the
    result level.
    """

    def __init__(
        self,
        index: SearchIndex,
        connector: DriveConnector,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or get_config()
        self._index = index
        self._connector = connector

    def search(self, query: SearchQuery) -> SearchResponse:
        """
        Run a query for one principal.

        An empty principal gets an empty result set (fail-closed).
        """
        start = time.perf_counter()

        if not query.principal:
            logger.warning("Search without a principal; returning no results")
            return SearchResponse(results=[], total_approx=0, took_ms=0.0)

        page = self._index.query(
            free_text=query.text,
            facet_filters=query.facet_filters,
            principal=query.principal,
            page=query.page,
            page_size=query.page_size,
        )

        results = [
            SearchHit(
                file_id=asset.file_id,
                path=asset.path,
                tags=dict(asset.tags),
                score=round(score, 4),
                source_url=self._connector.open_in_source_url(asset.file_id),
            )
            for asset, score in page.hits
        ]

        took_ms = (time.perf_counter() - start) * 1000.0
        logger.debug(
            f"Search text={query.text!r} facets={query.facet_filters} "
            f"-> {page.total} results in {took_ms:.1f}ms"
        )
        return SearchResponse(results=results, total_approx=page.total, took_ms=round(took_ms, 3))


def parse_facet_args(pairs: Optional[list]) -> Dict[str, str]:
    """Turn CLI 'facet=value' arguments into a filter mapping."""
    filters: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"facet filter must look like name=value, got {pair!r}")
        filters[key.strip()] = value.strip()
    return filters
