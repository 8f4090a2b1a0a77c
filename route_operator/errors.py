"""
Recoverable reconcile errors
"""

from typing import Optional


class NotReadyError(Exception):
    """
    A reconcile could not complete yet. Surfaced as Ready=False with the carried
    reason and retried according to the carried policy, never fatal.
    """

    def __init__(self, reason: Optional[str] = None, message: Optional[str] = None,
                 cause: Optional[BaseException] = None, requeue_after: Optional[float] = None,
                 no_requeue: bool = False):
        self.reason = reason
        self.message = message
        self.cause = cause
        self.requeue_after = requeue_after
        self.no_requeue = no_requeue
        super().__init__(str(self))

    def __str__(self):
        if self.message and self.cause is not None:
            return f"{self.message}: {self.cause}"
        if self.cause is not None:
            return str(self.cause)
        return self.message or ''
