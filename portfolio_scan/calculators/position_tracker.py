"""
Position Tracker: moving-average cost basis engine.

Pure logic, no Django dependencies. Merges decoded trades, promotions,
reconciled transfers and inferred trades into one chronological ledger and
replays it to track per-token shares, cost basis and realized PnL.

Replay rules:
- free shares (promotion, reconciled transfer in) add shares at zero cost
- any share removal takes cost out at the current average cost
- a buy adds the stablecoin the wallet paid to cost; unpaid buys are
  counted as gifts or unknown-cost buys and add nothing
- a sell realizes proceeds minus removed cost when the wallet received the
  proceeds, otherwise it is counted as proceeds redirected
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from src.api.models import normalize_address

from ..constants import ONE_SHARE
from .interfaces import IPositionTracker
from .types import (
    DecodedReceipt,
    InferredTrade,
    LedgerEntry,
    LedgerEntryKind,
    Position,
    ReconciledTransferEvent,
    TokenKey,
)

logger = logging.getLogger(__name__)


@dataclass
class RealizedPnLEvent:
    """Emitted when a sell realizes PnL."""
    timestamp: Optional[datetime]
    tx_hash: str
    token_key: TokenKey
    amount: int  # realized PnL delta, stablecoin base units


@dataclass
class LedgerReplay:
    """Position state and counters after one replay pass."""
    positions: Dict[TokenKey, Position] = field(default_factory=dict)
    realized_events: List[RealizedPnLEvent] = field(default_factory=list)
    gift_buy_count: int = 0
    unknown_cost_buy_count: int = 0
    proceeds_redirected_count: int = 0
    reconciled_transfer_in_count: int = 0
    reconciled_transfer_out_count: int = 0

    @property
    def realized_pnl(self) -> int:
        return sum(p.realized_pnl for p in self.positions.values())

    @property
    def total_cost_basis(self) -> int:
        return sum(p.cost_basis for p in self.positions.values())

    @property
    def negative_position_count(self) -> int:
        return sum(1 for p in self.positions.values() if p.negative_shares)


class LedgerBuilder:
    """Builds the sorted ledger for one wallet from the per-transaction pieces."""

    def build(
        self,
        tx_hashes: Iterable[str],
        decoded_by_tx: Mapping[str, DecodedReceipt],
        reconciled_by_tx: Mapping[str, List[ReconciledTransferEvent]],
        inferred_by_tx: Optional[Mapping[str, InferredTrade]] = None,
        timestamp_by_tx: Optional[Mapping[str, datetime]] = None,
        block_by_tx: Optional[Mapping[str, int]] = None,
    ) -> List[LedgerEntry]:
        """
        Args:
            tx_hashes: transactions in chain order; this orders transactions that
                share a block
            decoded_by_tx: decoded receipts; a decoded tx never uses its inferred trade
            reconciled_by_tx: synthetic transfers per tx
            inferred_by_tx: inferred trades, used for txs without a decoded receipt
        """
        inferred_by_tx = inferred_by_tx or {}
        timestamp_by_tx = timestamp_by_tx or {}
        block_by_tx = block_by_tx or {}
        entries: List[LedgerEntry] = []

        def add(tx_hash, **kwargs):
            entries.append(LedgerEntry(
                tx_hash=tx_hash,
                timestamp=timestamp_by_tx.get(tx_hash),
                block_number=block_by_tx.get(tx_hash),
                tx_position=position,
                sequence=len(entries),
                **kwargs,
            ))

        for position, tx_hash in enumerate(tx_hashes):
            decoded = decoded_by_tx.get(tx_hash)
            if decoded is not None:
                for trade in decoded.trades:
                    add(
                        tx_hash,
                        kind=LedgerEntryKind.TRADE,
                        token_key=trade.token_key,
                        wallet_share_delta=trade.wallet_share_delta,
                        wallet_currency_delta=trade.wallet_currency_delta,
                        log_index=trade.log_index,
                        initiator=trade.initiator,
                        recipient=trade.recipient,
                    )
                for promotion in decoded.promotions:
                    add(
                        tx_hash,
                        kind=LedgerEntryKind.PROMOTION,
                        token_key=promotion.token_key,
                        wallet_share_delta=promotion.wallet_share_delta,
                        log_index=promotion.log_index,
                    )
            else:
                inferred = inferred_by_tx.get(tx_hash)
                if inferred is not None and inferred.is_trade:
                    add(
                        tx_hash,
                        kind=LedgerEntryKind.INFERRED_TRADE,
                        token_key=inferred.token_key,
                        wallet_share_delta=inferred.share_delta,
                        wallet_currency_delta=inferred.currency_delta,
                    )

            for transfer in reconciled_by_tx.get(tx_hash, []):
                add(
                    tx_hash,
                    kind=LedgerEntryKind.RECONCILED_TRANSFER,
                    token_key=transfer.token_key,
                    wallet_share_delta=transfer.signed_delta,
                )

        entries.sort(key=lambda e: e.sort_key())
        return entries


class PositionTracker(IPositionTracker):
    """
    Replays a sorted ledger using moving-average cost basis.

    Replay is stateless between calls: every call starts from empty positions,
    so replaying the same ledger twice yields identical state.
    """

    def replay(self, entries: Iterable[LedgerEntry], wallet_address: str) -> LedgerReplay:
        wallet = normalize_address(wallet_address)
        state = LedgerReplay()

        for entry in entries:
            if entry.wallet_share_delta == 0:
                continue
            self._process_entry(entry, state, wallet)

        negative = state.negative_position_count
        if negative:
            logger.warning(f'{negative} positions went negative during replay for {wallet}')
        return state

    def _process_entry(self, entry: LedgerEntry, state: LedgerReplay, wallet: str) -> None:
        """Process a single entry, updating positions and emitting realized PnL."""
        handler = {
            LedgerEntryKind.PROMOTION: self._handle_free_shares,
            LedgerEntryKind.RECONCILED_TRANSFER: self._handle_free_shares,
            LedgerEntryKind.TRADE: self._handle_trade,
            LedgerEntryKind.INFERRED_TRADE: self._handle_trade,
        }.get(entry.kind)

        if handler:
            pos = self._get_or_create_position(state.positions, entry.token_key)
            handler(entry, pos, state, wallet)
            if pos.shares < 0:
                pos.negative_shares = True

    @staticmethod
    def _get_or_create_position(positions: Dict[TokenKey, Position], key: TokenKey) -> Position:
        if key not in positions:
            positions[key] = Position(token_key=key)
        return positions[key]

    @staticmethod
    def _remove_shares(pos: Position, removed: int) -> int:
        """
        Take `removed` shares out at average cost; returns the cost removed.

        Cost comes out only for shares actually held. Removing all held shares
        removes all cost, so no rounding dust is left behind.
        """
        held = pos.shares
        cost_removed = 0
        if held > 0:
            if removed >= held:
                cost_removed = pos.cost_basis
            else:
                avg_cost = pos.cost_basis * ONE_SHARE // held
                cost_removed = avg_cost * removed // ONE_SHARE
        pos.shares -= removed
        pos.cost_basis -= cost_removed
        return cost_removed

    def _handle_free_shares(self, entry: LedgerEntry, pos: Position, state: LedgerReplay, wallet: str) -> None:
        """PROMOTION / RECONCILED_TRANSFER: zero-cost shares in, average-cost removal out."""
        delta = entry.wallet_share_delta
        is_transfer = entry.kind == LedgerEntryKind.RECONCILED_TRANSFER

        if delta > 0:
            pos.shares += delta
            pos.free_shares_in += delta
            pos.free_events += 1
            if is_transfer:
                state.reconciled_transfer_in_count += 1
        else:
            self._remove_shares(pos, -delta)
            if is_transfer:
                state.reconciled_transfer_out_count += 1

    def _handle_trade(self, entry: LedgerEntry, pos: Position, state: LedgerReplay, wallet: str) -> None:
        if entry.wallet_share_delta > 0:
            self._handle_buy(entry, pos, state, wallet)
        else:
            self._handle_sell(entry, pos, state)

    def _handle_buy(self, entry: LedgerEntry, pos: Position, state: LedgerReplay, wallet: str) -> None:
        """BUY: add shares; add what the wallet paid (currency + fee) to cost."""
        delta = entry.wallet_share_delta
        currency = entry.wallet_currency_delta

        pos.shares += delta
        pos.bought_shares += delta

        if currency < 0:
            pos.cost_basis += -currency
            pos.spent += -currency
        elif entry.recipient == wallet and entry.initiator != wallet:
            state.gift_buy_count += 1
        else:
            state.unknown_cost_buy_count += 1

    def _handle_sell(self, entry: LedgerEntry, pos: Position, state: LedgerReplay) -> None:
        """SELL: remove shares at average cost; realize PnL if the wallet got the proceeds."""
        sold = -entry.wallet_share_delta
        currency = entry.wallet_currency_delta

        pos.sold_shares += sold
        cost_removed = self._remove_shares(pos, sold)

        if currency > 0:
            realized = currency - cost_removed
            pos.realized_pnl += realized
            pos.received += currency
            state.realized_events.append(RealizedPnLEvent(
                timestamp=entry.timestamp,
                tx_hash=entry.tx_hash,
                token_key=entry.token_key,
                amount=realized,
            ))
        else:
            # Proceeds went to another recipient.
            state.proceeds_redirected_count += 1
