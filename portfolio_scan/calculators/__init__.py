"""
Calculators module: the portfolio reconstruction engine.

Data flows leaf-first:
- RawDeltaAggregator: transfer records -> per-tx raw share/stablecoin deltas
- ProtocolEventDecoder: receipts -> decoded trades and promotions
- Reconciler: raw vs decoded -> synthetic zero-cost transfers
- LedgerBuilder / PositionTracker: sorted ledger -> moving-average positions
- PriceFetcher / value_portfolio: prices -> valuation and unrealized PnL
"""

from .aggregators import RealizedPnLDailyAggregator, RealizedPnLTokenAggregator
from .event_decoder import ProtocolEventDecoder, receipt_currency_delta
from .interfaces import IPositionTracker, IRealizedPnLAggregator
from .position_tracker import LedgerBuilder, LedgerReplay, PositionTracker, RealizedPnLEvent
from .raw_deltas import ActivityItem, RawDeltaAggregator, RawDeltaResult, infer_trade
from .reconciliation import Reconciler, ReconciliationResult
from .types import TokenKey
from .valuation import PriceFetcher, PriceFetchResult, Valuation, value_portfolio

__all__ = [
    'ActivityItem',
    'IPositionTracker',
    'IRealizedPnLAggregator',
    'LedgerBuilder',
    'LedgerReplay',
    'PositionTracker',
    'PriceFetchResult',
    'PriceFetcher',
    'ProtocolEventDecoder',
    'RawDeltaAggregator',
    'RawDeltaResult',
    'RealizedPnLDailyAggregator',
    'RealizedPnLEvent',
    'RealizedPnLTokenAggregator',
    'Reconciler',
    'ReconciliationResult',
    'TokenKey',
    'Valuation',
    'infer_trade',
    'receipt_currency_delta',
    'value_portfolio',
]
