"""
Engine Configuration - Centralized settings for the crawl & index engine.

Uses environment variables with sensible defaults. All paths are resolved
to absolute paths for reliability.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass
class RankingWeights:
    """
    Free-text scoring weights.

    Field weights multiply term frequency per field. Facet filters are
    conjunctive, so every candidate matches all of them; `facet_match` is a
    flat bonus per query term found in an asset's tag values.
    """
    name: float = 3.0
    tags: float = 2.0
    path: float = 1.0
    author: float = 1.0
    facet_match: float = 0.5


@dataclass
class EngineConfig:
    """
    Configuration for the crawl & index engine.

    The database defaults to ~/.driveindex/driveindex.db.
    """

    # --- Paths ---
    db_path: Path = field(default_factory=lambda: Path.home() / ".driveindex" / "driveindex.db")
    root_folder_id: str = "root"

    # --- Workers ---
    worker_count: int = 4            # Parallel crawl workers (one job each)
    file_concurrency: int = 16       # In-flight file observations per job
    poll_interval_ms: int = 1000     # Idle wait between claim attempts

    # --- Liveness ---
    liveness_window_s: float = 120.0   # Processing job without heartbeat is reclaimable
    heartbeat_interval_s: float = 20.0

    # --- Outbound budget (shared token bucket) ---
    rate_limit_per_s: float = 10.0
    rate_limit_burst: int = 20

    # --- Retry ---
    retry_max_attempts: int = 5
    retry_base_delay_s: float = 0.5
    retry_max_delay_s: float = 30.0
    retry_jitter: float = 0.2        # +/- 20%

    # --- Change ingestor ---
    ingest_batch_size: int = 200
    ingest_flush_ms: int = 2000      # Batch changes arriving within this window
    dedup_cache_size: int = 100_000

    # --- Search ---
    default_page_size: int = 20
    max_page_size: int = 100
    public_principal: str = "anyone"
    ranking: RankingWeights = field(default_factory=RankingWeights)

    # --- Taxonomy ---
    taxonomy_anchor: str = "Subjects"

    def __post_init__(self):
        """Ensure the database path is absolute and its directory exists."""
        self.db_path = Path(self.db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def ingest_flush_s(self) -> float:
        return self.ingest_flush_ms / 1000.0

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """
        Create config from environment variables.

        Supported env vars:
            DRIVEINDEX_DB_PATH: Path to SQLite database
            DRIVEINDEX_ROOT_FOLDER: Folder id crawled and watched by default
            DRIVEINDEX_WORKERS: Parallel crawl workers
            DRIVEINDEX_FILE_CONCURRENCY: In-flight observations per job
            DRIVEINDEX_RATE_LIMIT: Outbound requests per second
            DRIVEINDEX_RATE_BURST: Token bucket capacity
            DRIVEINDEX_RETRY_ATTEMPTS: Attempt ceiling for transient errors
            DRIVEINDEX_LIVENESS_WINDOW: Seconds before a silent job is reclaimable
            DRIVEINDEX_PUBLIC_PRINCIPAL: Principal that grants access to everyone
        """
        config = cls()

        if db_path := os.environ.get("DRIVEINDEX_DB_PATH"):
            config.db_path = Path(db_path)

        if root := os.environ.get("DRIVEINDEX_ROOT_FOLDER"):
            config.root_folder_id = root

        if workers := os.environ.get("DRIVEINDEX_WORKERS"):
            config.worker_count = int(workers)

        if concurrency := os.environ.get("DRIVEINDEX_FILE_CONCURRENCY"):
            config.file_concurrency = int(concurrency)

        if rate := os.environ.get("DRIVEINDEX_RATE_LIMIT"):
            config.rate_limit_per_s = float(rate)

        if burst := os.environ.get("DRIVEINDEX_RATE_BURST"):
            config.rate_limit_burst = int(burst)

        if attempts := os.environ.get("DRIVEINDEX_RETRY_ATTEMPTS"):
            config.retry_max_attempts = int(attempts)

        if window := os.environ.get("DRIVEINDEX_LIVENESS_WINDOW"):
            config.liveness_window_s = float(window)

        if public := os.environ.get("DRIVEINDEX_PUBLIC_PRINCIPAL"):
            config.public_principal = public

        config.__post_init__()
        return config


# Singleton default config
_default_config: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """Get the default configuration (singleton)."""
    global _default_config
    if _default_config is None:
        _default_config = EngineConfig.from_env()
    return _default_config


def set_config(config: EngineConfig) -> None:
    """Override the default configuration (for testing)."""
    global _default_config
    _default_config = config
