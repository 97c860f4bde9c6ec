"""
Aggregators for realized PnL reporting.

Groups RealizedPnLEvents by token and by day.
"""

from collections import defaultdict
from typing import Any, Dict, List

from .interfaces import IRealizedPnLAggregator
from .position_tracker import RealizedPnLEvent
from .types import TokenKey


class RealizedPnLTokenAggregator(IRealizedPnLAggregator):
    """Groups realized PnL events by TokenKey."""

    def aggregate(self, events: List[RealizedPnLEvent]) -> List[Dict[str, Any]]:
        """
        Aggregate realized PnL events by token.

        Returns list of dicts sorted by absolute PnL descending.
        """
        by_token: Dict[TokenKey, int] = defaultdict(int)
        sells: Dict[TokenKey, int] = defaultdict(int)
        for event in events:
            by_token[event.token_key] += event.amount
            sells[event.token_key] += 1

        results = []
        for key, pnl in sorted(by_token.items(), key=lambda kv: (-abs(kv[1]), kv[0])):
            results.append({
                'player_token': key.contract_address,
                'token_id_dec': key.token_id_dec,
                'realized_pnl_usdc_raw': str(pnl),
                'sell_count': sells[key],
            })

        return results


class RealizedPnLDailyAggregator(IRealizedPnLAggregator):
    """Groups realized PnL events by UTC date with cumulative tracking."""

    def aggregate(self, events: List[RealizedPnLEvent]) -> List[Dict[str, Any]]:
        """
        Aggregate realized PnL events by date.

        Events without a timestamp cannot be placed on a day and are skipped.
        Returns list of dicts sorted chronologically with cumulative PnL.
        """
        by_date: Dict[Any, int] = defaultdict(int)
        for event in events:
            if event.timestamp is None:
                continue
            by_date[event.timestamp.date()] += event.amount

        cumulative = 0
        results = []

        for day in sorted(by_date.keys()):
            day_pnl = by_date[day]
            cumulative += day_pnl
            results.append({
                'date': day.isoformat(),
                'daily_pnl_usdc_raw': str(day_pnl),
                'cumulative_pnl_usdc_raw': str(cumulative),
            })

        return results
