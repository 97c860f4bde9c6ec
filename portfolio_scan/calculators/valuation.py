"""
Holdings valuation.

Current prices come from each deployment's pair contract in batches; a
failing batch leaves its tokens unpriced and never fails the scan.
Unrealized PnL is computed for ledger-tracked shares only.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from src.api.exceptions import ChainProviderError, DecodeError
from src.interfaces.price_reader import IPriceReader
from src.services.concurrency import Deadline, map_limit
from src.services.retry import RetryPolicy

from ..constants import ONE_SHARE, pair_for_player_token
from .position_tracker import LedgerReplay
from .types import TokenKey

logger = logging.getLogger(__name__)


@dataclass
class PriceFetchResult:
    prices: Dict[TokenKey, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    failed_batches: int = 0
    truncated_by_budget: bool = False


def chunk(items: Sequence, size: int) -> List[list]:
    size = max(1, size)
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class PriceFetcher:
    """
    Reads current prices for a set of tokens.

    Contracts are fetched concurrently, one worker each; batches of one
    contract are sequential and the deadline is checked before each batch.
    """

    def __init__(
        self,
        price_reader: IPriceReader,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = 100,
        pair_lookup: Callable[[str], Optional[str]] = pair_for_player_token,
    ):
        self._reader = price_reader
        self._retry = retry_policy or RetryPolicy()
        self._batch_size = batch_size
        self._pair_lookup = pair_lookup

    def fetch(self, keys: Sequence[TokenKey], deadline: Optional[Deadline] = None) -> PriceFetchResult:
        by_contract: Dict[str, List[int]] = defaultdict(list)
        for key in keys:
            by_contract[key.contract_address].append(key.token_id)

        result = PriceFetchResult()
        groups = []
        for contract, token_ids in sorted(by_contract.items()):
            pair = self._pair_lookup(contract)
            if not pair:
                logger.debug(f'No pair contract for {contract}; leaving {len(token_ids)} tokens unpriced')
                continue
            groups.append((contract, pair, token_ids))

        outcomes = map_limit(groups, len(groups), lambda g: self._fetch_contract(*g, deadline=deadline))
        for outcome in outcomes:
            partial = outcome.value
            if partial is None:
                result.errors.append(str(outcome.error))
                continue
            result.prices.update(partial.prices)
            result.errors.extend(partial.errors)
            result.failed_batches += partial.failed_batches
            result.truncated_by_budget = result.truncated_by_budget or partial.truncated_by_budget
        return result

    def _fetch_contract(
        self,
        contract: str,
        pair: str,
        token_ids: List[int],
        deadline: Optional[Deadline] = None,
    ) -> PriceFetchResult:
        partial = PriceFetchResult()
        for batch in chunk(token_ids, self._batch_size):
            if deadline is not None and deadline.expired():
                partial.truncated_by_budget = True
                break
            try:
                prices = self._retry.call(self._reader.get_prices, pair, batch)
            except (ChainProviderError, DecodeError) as e:
                logger.warning(f'Price batch of {len(batch)} on {pair} failed: {e}')
                partial.errors.append(f'{pair}: {e}')
                partial.failed_batches += 1
                continue
            for i, token_id in enumerate(batch):
                price = int(prices[i]) if i < len(prices) else 0
                partial.prices[TokenKey.of(contract, token_id)] = price
        return partial


def share_value(price: Optional[int], shares: int) -> Optional[int]:
    """Stablecoin value of `shares` at `price` per 1e18 shares."""
    if price is None:
        return None
    return price * shares // ONE_SHARE


@dataclass
class Valuation:
    positions_by_token: List[dict]
    current_value: int = 0
    current_value_all_holdings: int = 0
    holdings_priced_count: int = 0
    unrealized_pnl: int = 0


def value_portfolio(
    holdings: List[Tuple[TokenKey, int]],
    replay: LedgerReplay,
    prices: Dict[TokenKey, int],
) -> Valuation:
    """
    Join on-chain holdings, ledger positions and prices into per-token rows.

    Rows are emitted for current holdings only, highest holding value first.
    """
    valuation = Valuation(positions_by_token=[])

    for key, balance in holdings:
        price = prices.get(key)
        if price is None:
            continue
        valuation.holdings_priced_count += 1
        valuation.current_value_all_holdings += share_value(price, balance)

    for key, pos in replay.positions.items():
        price = prices.get(key)
        if price is None or pos.shares <= 0:
            continue
        value = share_value(price, pos.shares)
        valuation.current_value += value
        valuation.unrealized_pnl += value - pos.cost_basis

    rows = []
    for key, balance in holdings:
        pos = replay.positions.get(key)
        tracked_shares = pos.shares if pos else 0
        cost_basis = pos.cost_basis if pos else 0
        avg_cost = pos.avg_cost if pos else None
        price = prices.get(key)
        holding_value = share_value(price, balance)
        tracked_value = share_value(price, tracked_shares)
        rows.append((holding_value or 0, {
            'player_token': key.contract_address,
            'token_id_dec': key.token_id_dec,
            'holding_shares_raw': str(balance),
            'tracked_shares_raw': str(tracked_shares),
            'cost_basis_usdc_raw': str(cost_basis),
            'avg_cost_usdc_per_share_raw': _opt_str(avg_cost),
            'current_price_usdc_per_share_raw': _opt_str(price),
            'current_value_holding_usdc_raw': _opt_str(holding_value),
            'current_value_tracked_usdc_raw': _opt_str(tracked_value),
            'unrealized_pnl_tracked_usdc_raw': _opt_str(
                tracked_value - cost_basis if tracked_value is not None else None
            ),
            'negative_shares': bool(pos and pos.negative_shares),
            'totals': pos.flow_totals() if pos else None,
        }))

    rows.sort(key=lambda r: -r[0])
    valuation.positions_by_token = [row for _, row in rows]
    return valuation


def _opt_str(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)
