"""
Reconciliation Engine.

Pure logic, no Django dependencies. Raw transfer deltas are the ground truth
for holdings; decoded events are the preferred explanation of them. Whatever
the decoded events do not explain becomes a synthetic zero-cost transfer, so
the ledger always sums to the on-chain balance regardless of which event
types the decoder knows.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from .types import DecodedReceipt, InferredTrade, ReconciledTransferEvent, TokenKey

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    transfers_by_tx: Dict[str, List[ReconciledTransferEvent]] = field(default_factory=dict)
    mismatch_count: int = 0
    mismatch_tx_count: int = 0
    samples: List[dict] = field(default_factory=list)

    def transfers(self) -> List[ReconciledTransferEvent]:
        return [t for transfers in self.transfers_by_tx.values() for t in transfers]


def decoded_share_deltas(decoded: Optional[DecodedReceipt]) -> Dict[TokenKey, int]:
    """Σ wallet share delta per token over a receipt's decoded trades and promotions."""
    totals: Dict[TokenKey, int] = defaultdict(int)
    if decoded is None:
        return totals
    for trade in decoded.trades:
        totals[trade.token_key] += trade.wallet_share_delta
    for promotion in decoded.promotions:
        totals[promotion.token_key] += promotion.wallet_share_delta
    return totals


class Reconciler:
    """
    Emits one ReconciledTransferEvent per (tx, token) whose decoded delta
    differs from the raw delta.

    Residuals are taken over the union of raw and decoded tokens, so decoded
    events that cancel out on-chain are also neutralized.
    """

    def __init__(self, sample_limit: int = 8):
        self.sample_limit = max(0, sample_limit)

    def reconcile(
        self,
        tx_hashes: Iterable[str],
        raw_delta_by_tx: Mapping[str, Mapping[TokenKey, int]],
        decoded_by_tx: Mapping[str, DecodedReceipt],
        inferred_by_tx: Optional[Mapping[str, InferredTrade]] = None,
    ) -> ReconciliationResult:
        """
        Args:
            tx_hashes: transactions to reconcile, in the order samples are taken
            raw_delta_by_tx: tx -> token -> raw signed delta
            decoded_by_tx: tx -> decoded receipt, for transactions that were decoded
            inferred_by_tx: tx -> inferred trade, used as the explanation of
                transactions that have no decoded receipt
        """
        result = ReconciliationResult()
        inferred_by_tx = inferred_by_tx or {}

        for tx_hash in tx_hashes:
            expected = raw_delta_by_tx.get(tx_hash, {})
            explained = self._explained_deltas(tx_hash, decoded_by_tx, inferred_by_tx)

            transfers = []
            for key in sorted(set(expected) | set(explained)):
                expected_delta = expected.get(key, 0)
                decoded_delta = explained.get(key, 0)
                residual = expected_delta - decoded_delta
                if residual == 0:
                    continue
                transfers.append(ReconciledTransferEvent(
                    token_key=key,
                    direction='in' if residual > 0 else 'out',
                    amount=abs(residual),
                ))
                result.mismatch_count += 1
                if len(result.samples) < self.sample_limit:
                    result.samples.append({
                        'tx_hash': tx_hash,
                        'contract_address': key.contract_address,
                        'token_id_dec': key.token_id_dec,
                        'expected_delta_raw': str(expected_delta),
                        'decoded_delta_raw': str(decoded_delta),
                        'decoded': tx_hash in decoded_by_tx,
                    })

            if transfers:
                result.transfers_by_tx[tx_hash] = transfers
                result.mismatch_tx_count += 1

        if result.mismatch_count:
            logger.info(
                f'Reconciled {result.mismatch_count} share deltas across '
                f'{result.mismatch_tx_count} transactions'
            )
        return result

    @staticmethod
    def _explained_deltas(tx_hash, decoded_by_tx, inferred_by_tx) -> Dict[TokenKey, int]:
        if tx_hash in decoded_by_tx:
            return decoded_share_deltas(decoded_by_tx[tx_hash])
        inferred = inferred_by_tx.get(tx_hash)
        if inferred is not None and inferred.is_trade:
            return {inferred.token_key: inferred.share_delta}
        return {}
