"""
Data model of the portfolio reconstruction engine.

Pure Python, no Django dependencies. All share amounts are 18-decimal
fixed-point integers and all currency amounts are 6-decimal stablecoin
base units, kept as plain ints end to end.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from ..constants import ONE_SHARE


@dataclass(frozen=True, order=True)
class TokenKey:
    """(contract address, token id) of one tradeable player-share token."""

    contract_address: str
    token_id: int

    @classmethod
    def of(cls, contract_address: str, token_id: int) -> 'TokenKey':
        return cls((contract_address or '').lower(), int(token_id))

    @property
    def token_id_dec(self) -> str:
        return str(self.token_id)

    @property
    def token_id_hex(self) -> str:
        return hex(self.token_id)

    def __str__(self) -> str:
        return f'{self.contract_address}:{self.token_id}'


@dataclass(frozen=True)
class RawDelta:
    tx_hash: str
    token_key: TokenKey
    amount: int
    timestamp: Optional[datetime] = None


class TradeDirection(Enum):
    BUY = 'buy'
    SELL = 'sell'


def safe_price(currency: int, shares: int) -> Optional[int]:
    """Currency per 1e18 shares; undefined (None) for zero shares."""
    if shares == 0:
        return None
    return currency * ONE_SHARE // shares


@dataclass(frozen=True)
class DecodedTradeEvent:
    """One token leg of a batch AMM trade event."""

    direction: TradeDirection
    pair_contract: str
    token_key: TokenKey
    share_amount: int
    currency_amount: int
    fee_amount: int
    initiator: str
    recipient: str
    wallet_share_delta: int
    wallet_currency_delta: int
    log_index: Optional[int] = None

    @property
    def price_ex_fee(self) -> Optional[int]:
        return safe_price(self.currency_amount, self.share_amount)

    @property
    def price_inc_fee(self) -> Optional[int]:
        return safe_price(self.currency_amount + self.fee_amount, self.share_amount)

    def to_dict(self) -> dict:
        return {
            'kind': self.direction.value,
            'pair_contract': self.pair_contract,
            'player_token': self.token_key.contract_address,
            'token_id_dec': self.token_key.token_id_dec,
            'share_amount_raw': str(self.share_amount),
            'currency_raw': str(self.currency_amount),
            'fee_raw': str(self.fee_amount),
            'price_usdc_per_share_raw': _opt_str(self.price_ex_fee),
            'price_usdc_per_share_inc_fee_raw': _opt_str(self.price_inc_fee),
            'counterparty': {'initiator': self.initiator, 'recipient': self.recipient},
            'wallet_share_delta_raw': str(self.wallet_share_delta),
            'wallet_currency_delta_raw': str(self.wallet_currency_delta),
        }


@dataclass(frozen=True)
class DecodedPromotionEvent:
    """Protocol-issued free share grant."""

    source_contract: str
    token_key: TokenKey
    account: str
    share_amount: int
    wallet_share_delta: int
    log_index: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'kind': 'promotion',
            'source_contract': self.source_contract,
            'player_token': self.token_key.contract_address,
            'token_id_dec': self.token_key.token_id_dec,
            'account': self.account,
            'share_amount_raw': str(self.share_amount),
            'wallet_share_delta_raw': str(self.wallet_share_delta),
        }


@dataclass(frozen=True)
class UnknownLog:
    """A log from an allow-listed contract that failed ABI decoding."""

    address: str
    topic0: str
    topics: tuple
    data: str
    error: str
    log_index: Optional[int] = None

    def to_dict(self) -> dict:
        return {'address': self.address, 'topic0': self.topic0, 'error': self.error}


@dataclass
class DecodedReceipt:
    trades: List[DecodedTradeEvent] = field(default_factory=list)
    promotions: List[DecodedPromotionEvent] = field(default_factory=list)
    unknown_logs: List[UnknownLog] = field(default_factory=list)

    @property
    def primary_kind(self) -> Optional[str]:
        """'buy' or 'sell' when every decoded trade agrees, 'unknown' when mixed, None without trades."""
        if not self.trades:
            return None
        directions = {t.direction for t in self.trades}
        if len(directions) == 1:
            return directions.pop().value
        return 'unknown'

    def to_dict(self) -> dict:
        return {
            'trades': [t.to_dict() for t in self.trades],
            'promotions': [p.to_dict() for p in self.promotions],
            'unknown_logs': [u.to_dict() for u in self.unknown_logs],
        }


UNEXPLAINED_DELTA = 'unexplained_delta'


@dataclass(frozen=True)
class ReconciledTransferEvent:
    """Synthetic zero-cost transfer absorbing a decoding gap."""

    token_key: TokenKey
    direction: str  # 'in' | 'out'
    amount: int
    reason: str = UNEXPLAINED_DELTA

    @property
    def signed_delta(self) -> int:
        return self.amount if self.direction == 'in' else -self.amount

    def to_dict(self) -> dict:
        return {
            'kind': f'transfer_{self.direction}',
            'contract_address': self.token_key.contract_address,
            'token_id_dec': self.token_key.token_id_dec,
            'delta_raw': str(self.signed_delta),
            'reason': self.reason,
        }


@dataclass(frozen=True)
class InferredTrade:
    """Legacy classification of a transaction from its raw balance deltas."""

    kind: str  # 'buy' | 'sell' | 'unknown'
    token_key: Optional[TokenKey] = None
    share_delta: int = 0
    currency_delta: int = 0

    @property
    def price(self) -> Optional[int]:
        shares = abs(self.share_delta)
        currency = abs(self.currency_delta)
        if shares == 0 or currency == 0:
            return None
        return currency * ONE_SHARE // shares

    @property
    def is_trade(self) -> bool:
        return self.kind in ('buy', 'sell') and self.token_key is not None

    def to_dict(self) -> dict:
        result = {'kind': self.kind}
        if self.token_key is not None:
            result.update({
                'contract_address': self.token_key.contract_address,
                'token_id_dec': self.token_key.token_id_dec,
                'share_delta_raw': str(self.share_delta),
                'price_usdc_per_share_raw': _opt_str(self.price),
            })
        return result


class LedgerEntryKind(Enum):
    TRADE = 'trade'
    PROMOTION = 'promotion'
    RECONCILED_TRANSFER = 'reconciled_transfer'
    INFERRED_TRADE = 'inferred_trade'


@dataclass(frozen=True)
class LedgerEntry:
    """One wallet-relevant balance change, in replay order."""

    kind: LedgerEntryKind
    tx_hash: str
    timestamp: Optional[datetime]
    token_key: TokenKey
    wallet_share_delta: int
    wallet_currency_delta: int = 0
    block_number: Optional[int] = None
    tx_position: int = 0
    log_index: Optional[int] = None
    sequence: int = 0
    initiator: str = ''
    recipient: str = ''

    @property
    def is_free_share_kind(self) -> bool:
        return self.kind in (LedgerEntryKind.PROMOTION, LedgerEntryKind.RECONCILED_TRANSFER)

    def sort_key(self) -> tuple:
        """
        (timestamp, block, position in block, log index, discovery order).

        Missing timestamps and blocks sort first. Within one transaction,
        entries without a log index sort after the decoded events.
        """
        return (
            self.timestamp is not None,
            self.timestamp.timestamp() if self.timestamp is not None else 0.0,
            self.block_number if self.block_number is not None else -1,
            self.tx_position,
            self.log_index is None,
            self.log_index if self.log_index is not None else 0,
            self.sequence,
        )


@dataclass
class Position:
    """Per-token position state, mutated only by ledger replay."""

    token_key: TokenKey
    shares: int = 0
    cost_basis: int = 0
    realized_pnl: int = 0
    bought_shares: int = 0
    sold_shares: int = 0
    spent: int = 0
    received: int = 0
    free_shares_in: int = 0
    free_events: int = 0
    negative_shares: bool = False

    @property
    def avg_cost(self) -> Optional[int]:
        """Cost basis per 1e18 shares; None when no shares are held."""
        if self.shares <= 0:
            return None
        return self.cost_basis * ONE_SHARE // self.shares

    def flow_totals(self) -> dict:
        return {
            'bought_shares_raw': str(self.bought_shares),
            'sold_shares_raw': str(self.sold_shares),
            'spent_usdc_raw': str(self.spent),
            'received_usdc_raw': str(self.received),
            'free_shares_in_raw': str(self.free_shares_in),
            'free_events': self.free_events,
            'realized_pnl_usdc_raw': str(self.realized_pnl),
        }


def _opt_str(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)
