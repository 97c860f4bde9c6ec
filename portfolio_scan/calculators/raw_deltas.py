"""
Raw Delta Aggregator.

Pure logic, no Django dependencies. Turns bulk transfer records (ERC-1155
player shares and the stablecoin) into per-transaction signed deltas and
running balances for one wallet. The resulting deltas are the ground truth
every later stage is reconciled against.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from src.api.exceptions import ParseError
from src.api.models import TransferRecord, normalize_address, parse_int

from .types import InferredTrade, RawDelta, TokenKey

logger = logging.getLogger(__name__)


@dataclass
class RawDeltaResult:
    """Output of one aggregation pass."""
    holdings: Dict[TokenKey, int] = field(default_factory=dict)
    raw_delta_by_tx: Dict[str, Dict[TokenKey, int]] = field(default_factory=dict)
    currency_delta_by_tx: Dict[str, int] = field(default_factory=dict)
    timestamp_by_tx: Dict[str, datetime] = field(default_factory=dict)
    block_by_tx: Dict[str, int] = field(default_factory=dict)
    log_index_by_tx: Dict[str, int] = field(default_factory=dict)
    share_transfer_count: int = 0
    currency_transfer_count: int = 0
    contracts: List[str] = field(default_factory=list)
    parse_error_count: int = 0

    def raw_deltas(self) -> List[RawDelta]:
        """Flatten raw_delta_by_tx into RawDelta records."""
        return [
            RawDelta(tx_hash=tx_hash, token_key=key, amount=amount, timestamp=self.timestamp_by_tx.get(tx_hash))
            for tx_hash, deltas in self.raw_delta_by_tx.items()
            for key, amount in deltas.items()
        ]

    def sorted_holdings(self) -> List[Tuple[TokenKey, int]]:
        """Holdings by balance descending, TokenKey ascending on ties."""
        return sorted(self.holdings.items(), key=lambda kv: (-kv[1], kv[0]))

    def currency_delta(self, tx_hash: str) -> int:
        return self.currency_delta_by_tx.get(tx_hash, 0)


@dataclass
class ActivityItem:
    """One wallet transaction that moved player shares."""
    tx_hash: str
    timestamp: Optional[datetime]
    block_number: Optional[int]
    share_changes: Dict[TokenKey, int]
    currency_delta: int
    inferred: InferredTrade
    log_index: Optional[int] = None

    def sort_key(self) -> tuple:
        # Log indexes grow with the transaction index inside a block.
        return (
            self.timestamp is not None,
            self.timestamp.timestamp() if self.timestamp is not None else 0.0,
            self.block_number if self.block_number is not None else -1,
            self.log_index if self.log_index is not None else -1,
            self.tx_hash,
        )


def infer_trade(share_changes: Dict[TokenKey, int], currency_delta: int) -> InferredTrade:
    """
    Classify a transaction from its raw deltas alone.

    Only single-token transactions are classified; anything touching several
    tokens at once is 'unknown'.
    """
    if len(share_changes) != 1:
        return InferredTrade(kind='unknown')
    (key, share_delta), = share_changes.items()
    if share_delta > 0 and currency_delta < 0:
        kind = 'buy'
    elif share_delta < 0 and currency_delta > 0:
        kind = 'sell'
    else:
        kind = 'unknown'
    return InferredTrade(kind=kind, token_key=key, share_delta=share_delta, currency_delta=currency_delta)


class RawDeltaAggregator:
    """
    Accumulates signed wallet deltas from transfer records.

    A record adds its amount when the wallet is the recipient and subtracts it
    when the wallet is the sender; a self-transfer nets to zero. Records whose
    amounts fail to parse are skipped and counted, as are share records with
    no transaction hash, which could never be reconciled.
    """

    def __init__(self, wallet_address: str, share_contracts: Sequence[str], currency_contract: str):
        self.wallet = normalize_address(wallet_address)
        self.share_contracts = {normalize_address(c) for c in share_contracts}
        self.currency_contract = normalize_address(currency_contract)

    def aggregate(
        self,
        share_records: Iterable[TransferRecord],
        currency_records: Iterable[TransferRecord] = (),
    ) -> RawDeltaResult:
        result = RawDeltaResult()
        balances: Dict[TokenKey, int] = defaultdict(int)
        by_tx: Dict[str, Dict[TokenKey, int]] = defaultdict(lambda: defaultdict(int))
        contracts = set()

        for record in _dedupe(share_records):
            result.share_transfer_count += 1
            if record.contract_address not in self.share_contracts:
                continue
            if not record.tx_hash:
                result.parse_error_count += 1
                logger.warning(f"Skipping transfer {record.dedupe_key}: no transaction hash")
                continue
            try:
                amounts = self._parse_share_amounts(record)
            except ParseError as e:
                result.parse_error_count += 1
                logger.warning(f"Skipping transfer {record.dedupe_key}: {e}")
                continue

            contracts.add(record.contract_address)
            sign = self._sign(record)
            self._note_tx(result, record)
            for token_id, amount in amounts:
                key = TokenKey.of(record.contract_address, token_id)
                delta = sign * amount
                balances[key] += delta
                by_tx[record.tx_hash][key] += delta

        for record in _dedupe(currency_records):
            result.currency_transfer_count += 1
            if record.contract_address != self.currency_contract or not record.tx_hash:
                continue
            try:
                amount = parse_int(record.raw_value if record.raw_value is not None else '0x0')
            except ParseError as e:
                result.parse_error_count += 1
                logger.warning(f"Skipping stablecoin transfer {record.dedupe_key}: {e}")
                continue
            self._note_tx(result, record)
            delta = self._sign(record) * amount
            result.currency_delta_by_tx[record.tx_hash] = result.currency_delta_by_tx.get(record.tx_hash, 0) + delta

        result.holdings = {key: balance for key, balance in balances.items() if balance != 0}
        for tx_hash, deltas in by_tx.items():
            nonzero = {key: delta for key, delta in deltas.items() if delta != 0}
            if nonzero:
                result.raw_delta_by_tx[tx_hash] = nonzero
        result.contracts = sorted(contracts)

        logger.debug(
            f"Aggregated {result.share_transfer_count} share and {result.currency_transfer_count} "
            f"stablecoin transfers for {self.wallet}: {len(result.holdings)} holdings, "
            f"{len(result.raw_delta_by_tx)} share transactions, {result.parse_error_count} parse errors"
        )
        return result

    def build_activity(self, result: RawDeltaResult) -> List[ActivityItem]:
        """All share-moving transactions, newest first."""
        items = []
        for tx_hash, changes in result.raw_delta_by_tx.items():
            currency_delta = result.currency_delta(tx_hash)
            items.append(ActivityItem(
                tx_hash=tx_hash,
                timestamp=result.timestamp_by_tx.get(tx_hash),
                block_number=result.block_by_tx.get(tx_hash),
                share_changes=dict(sorted(changes.items())),
                currency_delta=currency_delta,
                inferred=infer_trade(changes, currency_delta),
                log_index=result.log_index_by_tx.get(tx_hash),
            ))
        items.sort(key=lambda a: a.sort_key(), reverse=True)
        return items

    def _sign(self, record: TransferRecord) -> int:
        sign = 0
        if record.to_address == self.wallet:
            sign += 1
        if record.from_address == self.wallet:
            sign -= 1
        return sign

    @staticmethod
    def _parse_share_amounts(record: TransferRecord) -> List[Tuple[int, int]]:
        # Parse every leg before applying any, so a bad leg drops the whole record.
        return [(parse_int(token_id), parse_int(value)) for token_id, value in record.erc1155_metadata]

    @staticmethod
    def _note_tx(result: RawDeltaResult, record: TransferRecord) -> None:
        if not record.tx_hash:
            return
        timestamp = record.timestamp
        if timestamp is not None and record.tx_hash not in result.timestamp_by_tx:
            result.timestamp_by_tx[record.tx_hash] = timestamp
        block = record.block_number
        if block is not None and record.tx_hash not in result.block_by_tx:
            result.block_by_tx[record.tx_hash] = block
        log_index = record.log_index
        if log_index is not None:
            known = result.log_index_by_tx.get(record.tx_hash)
            result.log_index_by_tx[record.tx_hash] = log_index if known is None else min(known, log_index)


def _dedupe(records: Iterable[TransferRecord]) -> List[TransferRecord]:
    seen = set()
    unique = []
    for record in records:
        if record.dedupe_key in seen:
            continue
        seen.add(record.dedupe_key)
        unique.append(record)
    return unique
