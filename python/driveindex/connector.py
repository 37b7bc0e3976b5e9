"""
Base class for file-store connectors.

The engine never talks to a drive API directly; it goes through this
interface. Network calls made here are the only suspension points of a
crawl.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional, Set, Tuple

from .models import ChangeEvent, DriveEntry, FileMetadata


class DriveConnector(ABC):
    """
    Interface to the external file store.

    To add a new store:
    1. Subclass DriveConnector
    2. Implement the listing, metadata, permission and change-stream calls
    3. Raise TransientError subclasses for retryable failures and
       ConnectorAuthError when credentials are revoked
    """

    @abstractmethod
    def list_folder(self, folder_id: str) -> AsyncIterator[DriveEntry]:
        """
        Lazily yield the direct children of a folder (files and folders).

        Pagination is the connector's concern.
        """
        pass

    @abstractmethod
    async def get_file_metadata(self, file_id: str) -> FileMetadata:
        """Fetch file-level attributes. Raises FileGoneError if missing."""
        pass

    @abstractmethod
    async def get_permissions(self, file_id: str) -> Set[str]:
        """Principals (users and groups) granted read access."""
        pass

    @abstractmethod
    def subscribe_changes(self, cursor: Optional[str]) -> AsyncIterator[Tuple[str, ChangeEvent]]:
        """
        Restartable, possibly infinite change stream.

        Yields (cursor_after_event, event). Passing a previously yielded
        cursor resumes delivery after that event.
        """
        pass

    @abstractmethod
    def open_in_source_url(self, file_id: str) -> str:
        """Link surfaced verbatim in search results."""
        pass

    async def close(self) -> None:
        """Release connector resources."""
        return None
