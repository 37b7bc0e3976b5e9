"""
Alerts - Operator-visible notifications.

Alerts are logged at their severity and kept in a bounded in-memory ring
so the status surface can show recent ones.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, List, Optional

from .models import utcnow


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alert:
    level: int
    scope: str
    message: str
    job_id: Optional[int] = None
    raised_at: datetime = field(default_factory=utcnow)


class AlertSink:
    """Collects alerts and forwards them to optional subscribers."""

    def __init__(self, capacity: int = 256):
        self._recent: Deque[Alert] = deque(maxlen=capacity)
        self._subscribers: List[Callable[[Alert], None]] = []

    def subscribe(self, callback: Callable[[Alert], None]) -> None:
        self._subscribers.append(callback)

    def raise_alert(
        self,
        scope: str,
        message: str,
        level: int = logging.ERROR,
        job_id: Optional[int] = None,
    ) -> Alert:
        alert = Alert(level=level, scope=scope, message=message, job_id=job_id)
        self._recent.append(alert)
        logger.log(level, f"ALERT [{scope}] {message}" + (f" (job {job_id})" if job_id else ""))
        for callback in self._subscribers:
            try:
                callback(alert)
            except Exception as e:
                logger.error(f"Alert subscriber error: {e}")
        return alert

    def recent(self, scope: Optional[str] = None) -> List[Alert]:
        return [a for a in self._recent if scope is None or a.scope == scope]
