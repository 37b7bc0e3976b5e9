"""File-store connectors shipped with the engine."""

from .local import LocalDriveConnector

__all__ = ["LocalDriveConnector"]
