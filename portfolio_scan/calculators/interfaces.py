"""
Interfaces for the portfolio reconstruction components.

High-level orchestration depends on these abstractions rather than on the
concrete replay and aggregation classes.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List


class IPositionTracker(ABC):
    """
    Interface for ledger replay / cost basis computation.
    """

    @abstractmethod
    def replay(self, entries: Iterable[Any], wallet_address: str) -> Any:
        """Replay a sorted ledger for a wallet and return the resulting position state."""
        pass


class IRealizedPnLAggregator(ABC):
    """
    Interface for grouping realized PnL events along one dimension.
    """

    @abstractmethod
    def aggregate(self, events: List[Any]) -> List[Dict[str, Any]]:
        """Aggregate realized PnL events into JSON-ready rows."""
        pass
