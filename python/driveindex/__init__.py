"""
Drive Index Package - Crawl a shared drive into a faceted, permission-aware index.

Modules:
    - config: Centralized configuration
    - models: Records shared by the stores, connector and search surface
    - taxonomy: Folder-path grammar to facet tags
    - permissions: Per-file access snapshots (fail-closed)
    - state_store: Durable crawl jobs, audit trail and change cursors
    - orchestrator: Full and incremental crawls, worker pool (main entry point)
    - ingestor: Change stream to deduplicated incremental jobs
    - index / search: Faceted, ranked, access-filtered queries
    - connectors.local: A local directory tree as a file store

Flow:
    Enumerate / Change batch → Revision check → Metadata + ACL → Taxonomy → Mirror → Index

Usage:
    from driveindex import Orchestrator
    from driveindex.connectors import LocalDriveConnector

    orchestrator = Orchestrator(LocalDriveConnector(Path("~/Drive")))
    job = await orchestrator.crawl()
"""

from .orchestrator import Orchestrator
from .ingestor import ChangeIngestor
from .search import SearchService

__all__ = ["Orchestrator", "ChangeIngestor", "SearchService"]
