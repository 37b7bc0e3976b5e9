"""
Error Handling - Centralized error policies and custom exceptions.

This module defines how different error types are handled throughout the
crawl pipeline: transient failures are retried, per-file failures are
contained, and authorization failures halt the affected scope.
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


logger = logging.getLogger(__name__)


class ErrorAction(Enum):
    """What to do when an error occurs."""
    SKIP = auto()       # Contain to this file, continue the crawl
    RETRY = auto()      # Retry the operation (with backoff)
    ABORT = auto()      # Stop the current job
    ESCALATE = auto()   # Halt the scope and alert an operator


class EngineError(Exception):
    """Base exception for crawl & index errors."""
    pass


class TransientError(EngineError):
    """Failure expected to clear on retry."""
    pass


class RateLimitedError(TransientError):
    """The source rejected a request because of its quota."""
    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class ConnectorTimeoutError(TransientError):
    """A connector call timed out or hit a temporary network failure."""
    pass


class StoreError(TransientError):
    """Index or state store I/O failed."""
    pass


class ConnectorAuthError(EngineError):
    """Credentials revoked or access scope withdrawn."""
    def __init__(self, scope: Optional[str] = None, message: str = ""):
        self.scope = scope
        super().__init__(message or f"authorization revoked for scope {scope}")


class FileGoneError(EngineError):
    """The file disappeared between listing and fetch."""
    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(f"file not found at source: {file_id}")


class CrawlCancelled(EngineError):
    """The job was cancelled by an operator."""
    def __init__(self, job_id: Optional[int] = None):
        self.job_id = job_id
        super().__init__("cancelled")


class RetryExhaustedError(EngineError):
    """A transient error outlived the retry budget."""
    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")


class SnapshotNotFound(EngineError, KeyError):
    """No permission snapshot exists for the file."""
    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(f"no permission snapshot for {file_id}")


class InvalidTransitionError(EngineError):
    """A crawl job was asked to make a transition its state machine forbids."""
    pass


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    message_template: str = "{file}: {error}"


# Error type to policy mapping (first isinstance match wins)
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    CrawlCancelled: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.INFO,
        message_template="Crawl cancelled while processing {file}",
    ),
    ConnectorAuthError: ErrorPolicy(
        action=ErrorAction.ESCALATE,
        log_level=logging.CRITICAL,
        message_template="Authorization failure at {file}: {error}",
    ),
    RetryExhaustedError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.ERROR,
        message_template="Giving up on {file}: {error}",
    ),
    FileGoneError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="File not found (possibly deleted): {file}",
    ),
    TransientError: ErrorPolicy(
        action=ErrorAction.RETRY,
        log_level=logging.WARNING,
        message_template="Transient error on {file}: {error}",
    ),
}


def handle_error(
    error: Exception,
    file_id: Optional[str] = None,
    context: str = ""
) -> ErrorAction:
    """
    Handle an error according to the defined policies.

    Args:
        error: The exception that occurred
        file_id: File being processed (if applicable)
        context: Additional context for logging

    Returns:
        The action to take (SKIP, RETRY, ABORT, ESCALATE)
    """
    policy = None
    for error_type, p in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            policy = p
            break

    # Unknown errors are contained to the file
    if policy is None:
        policy = ErrorPolicy(
            action=ErrorAction.SKIP,
            log_level=logging.ERROR,
            message_template="Unexpected error: {file} - {error}",
        )

    file_str = file_id or "<unknown>"
    message = policy.message_template.format(file=file_str, error=str(error))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)

    return policy.action
