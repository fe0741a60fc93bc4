from utils.exceptions import ConsolidationInProgressError


class ConsolidationLock:
    """
    Single-flight gate for consolidation runs.

    try_acquire() is a plain synchronous check-and-set, so on one event loop no
    other coroutine can run between the check and the set. One instance is shared
    by the background loop and the HTTP trigger.
    """

    def __init__(self):
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def try_acquire(self) -> bool:
        if self._running:
            return False
        self._running = True
        return True

    def release(self) -> None:
        self._running = False

    def acquire(self) -> None:
        """try_acquire() that raises instead of returning False."""
        if not self.try_acquire():
            raise ConsolidationInProgressError("Consolidation already in progress")
