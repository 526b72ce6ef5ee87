"""
Core plugin types.

This module contains the exceptions shared by engine plugins and the
reconciler that drives them.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Raised by a convergence engine when converge or teardown fails."""

    def __init__(self, message: str, operation: Optional[str] = None):
        self.message = message
        self.operation = operation
        super().__init__(message)


class RequeueNeeded(Exception):
    """
    Signals that a resource should be reconciled again.

    Not an error: the reconciler requeues the resource with backoff and
    emits no diagnostic.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class RequeueNeededAfter(RequeueNeeded):
    """Signals that a resource should be reconciled again after a delay."""

    def __init__(self, message: str, duration: float):
        super().__init__(message)
        self.duration = duration
