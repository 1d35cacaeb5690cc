"""
Run Context

Explicit cancellation/deadline token scoped to one replication run. It is
passed into every store operation instead of relying on a process-wide
background context.
"""

from typing import Optional
import logging
import math
import threading
import time

from ch_pg_replication.errors import ReplicationCancelled

logger = logging.getLogger(__name__)


class ReplicationContext:
    """
    Cancellation token with an optional deadline.

    Usage:
        context = ReplicationContext(timeout=3600)
        replicator.replicate_all(config, context=context)

        # from another thread
        context.cancel("operator requested stop")
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Args:
            timeout: Seconds from now after which the run is considered
                     expired (None for no deadline)
        """
        self._cancel_event = threading.Event()
        self._reason: Optional[str] = None
        self._deadline = time.monotonic() + timeout if timeout else None

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Safe to call from any thread, more than once."""
        if not self._cancel_event.is_set():
            self._reason = reason
            self._cancel_event.set()
            logger.warning(f"Replication run cancelled: {reason}")

    @property
    def cancelled(self) -> bool:
        if self._cancel_event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None if there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        """
        Raise if the run has been cancelled or the deadline has passed.

        Raises:
            ReplicationCancelled: If the run should stop
        """
        if self.cancelled:
            raise ReplicationCancelled(self._reason or "cancelled")

    def statement_timeout_ms(self) -> Optional[int]:
        """Remaining time as a PostgreSQL statement_timeout value (ms), if any."""
        remaining = self.remaining()
        if remaining is None:
            return None
        return max(1, int(remaining * 1000))

    def execution_time_seconds(self) -> Optional[int]:
        """Remaining time as a ClickHouse max_execution_time value (s), if any."""
        remaining = self.remaining()
        if remaining is None:
            return None
        return max(1, math.ceil(remaining))
