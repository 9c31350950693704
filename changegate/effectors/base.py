"""
Base Effector Interface

Defines the contract between the engine and the external platform that
actually performs schema mutations and deployments.
"""

from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, Optional
import logging


class Effector(ABC):
    """
    Performs approved mutations against the external platform.

    apply() returns the snapshot needed to undo the mutation; revert()
    receives that snapshot back. Both raise RetryableEffectorError for
    transient failures and FatalEffectorError when the platform refuses.
    """

    @abstractmethod
    def apply(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Perform the mutation described by payload.

        Returns:
            Rollback snapshot (None is stored as an empty snapshot)
        """

    @abstractmethod
    def revert(self, snapshot: Dict[str, Any]) -> None:
        """Undo a mutation using the snapshot returned by apply()"""


class DryRunEffector(Effector):
    """
    Effector that touches nothing.

    Used when no platform endpoint is configured; every mutation is logged
    and the most recent ones are kept so they can be inspected.
    """

    def __init__(self, history_size: int = 1000):
        self.logger = logging.getLogger(__name__)
        self.applied: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self.reverted: Deque[Dict[str, Any]] = deque(maxlen=history_size)

    def apply(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self.applied.append(payload)
        self.logger.info(f"[dry-run] apply {payload}")
        return {'dry_run': True, 'payload': payload}

    def revert(self, snapshot: Dict[str, Any]) -> None:
        self.reverted.append(snapshot)
        self.logger.info(f"[dry-run] revert {snapshot}")
