"""Fake collaborators and builders shared by the portfolio_scan tests."""

import threading
from typing import Dict, List, Optional

from eth_abi import encode

from src.api.exceptions import TransientNetworkError
from src.api.models import ReceiptLog, TransferPage, TransferRecord, TxReceipt
from src.interfaces.cache_store import ICacheStore
from src.interfaces.chain_provider import IChainDataProvider
from src.interfaces.price_reader import IPriceReader

from portfolio_scan import constants
from portfolio_scan.conf import DEFAULTS, ScanSettings

WALLET = '0x' + 'aa' * 20
OTHER = '0x' + 'bb' * 20
THIRD = '0x' + 'cc' * 20

SHARE_1 = constants.DEPLOYMENTS[0]['player_token']
PAIR_1 = constants.DEPLOYMENTS[0]['pair']
PROMO_1 = constants.DEPLOYMENTS[0]['promotions']
SHARE_2 = constants.DEPLOYMENTS[1]['player_token']
PAIR_2 = constants.DEPLOYMENTS[1]['pair']

ONE = 10 ** 18
USDC = 10 ** 6


def tx(n: int) -> str:
    return '0x' + format(n, '064x')


def ts(day: int, hour: int = 12) -> str:
    return f'2025-01-{day:02d}T{hour:02d}:00:00.000Z'


def make_settings(**overrides) -> ScanSettings:
    values = {k.lower(): v for k, v in DEFAULTS.items()}
    values.update(retry_base_delay=0, uri_retry_base_delay=0)
    values.update(overrides)
    return ScanSettings(**values)


def share_transfer(tx_hash, frm, to, token_id, amount, contract=SHARE_1, timestamp=None,
                   block=100, unique_id=None, legs=None):
    """ERC-1155 record; `legs` overrides the single (token_id, amount) leg with raw strings."""
    metadata = legs if legs is not None else [(hex(token_id), hex(amount))]
    return TransferRecord(
        unique_id=unique_id or f'{tx_hash}:{frm}:{to}:{contract}:{token_id}',
        tx_hash=tx_hash,
        from_address=frm,
        to_address=to,
        category='erc1155',
        contract_address=contract,
        erc1155_metadata=metadata,
        block_num=hex(block),
        block_timestamp=timestamp or ts(10),
    )


def usdc_transfer(tx_hash, frm, to, amount, timestamp=None, block=100, unique_id=None, raw_value=None):
    return TransferRecord(
        unique_id=unique_id or f'{tx_hash}:{frm}:{to}:usdc:{amount}',
        tx_hash=tx_hash,
        from_address=frm,
        to_address=to,
        category='erc20',
        contract_address=constants.BASE_USDC,
        raw_value=raw_value if raw_value is not None else hex(amount),
        block_num=hex(block),
        block_timestamp=timestamp or ts(10),
    )


def address_topic(address: str) -> str:
    return '0x' + '0' * 24 + address[2:].lower()


def _data(types, values) -> str:
    return '0x' + encode(types, values).hex()


def purchase_log(buyer, recipient, ids, amounts, currency, fees=None, pair=PAIR_1, log_index=0):
    fees = fees if fees is not None else [0] * len(ids)
    return ReceiptLog(
        address=pair,
        topics=[constants.TOPIC_PLAYER_TOKENS_PURCHASE, address_topic(buyer), address_topic(recipient)],
        data=_data(['uint256[]'] * 5, [ids, amounts, currency, [0] * len(ids), fees]),
        log_index=log_index,
    )


def sale_log(seller, recipient, ids, amounts, currency, fees=None, pair=PAIR_1, log_index=0):
    fees = fees if fees is not None else [0] * len(ids)
    return ReceiptLog(
        address=pair,
        topics=[constants.TOPIC_CURRENCY_PURCHASE, address_topic(seller), address_topic(recipient)],
        data=_data(['uint256[]'] * 5, [ids, amounts, currency, [0] * len(ids), fees]),
        log_index=log_index,
    )


def promotion_log(account, ids, amounts, source=PROMO_1, log_index=0):
    return ReceiptLog(
        address=source,
        topics=[constants.TOPIC_PLAYER_SHARES_PROMOTED, address_topic(account)],
        data=_data(['uint256[]', 'uint256[]'], [ids, amounts]),
        log_index=log_index,
    )


def usdc_log(frm, to, amount, log_index=0):
    return ReceiptLog(
        address=constants.BASE_USDC,
        topics=[constants.TOPIC_ERC20_TRANSFER, address_topic(frm), address_topic(to)],
        data='0x' + format(amount, '064x'),
        log_index=log_index,
    )


def receipt(tx_hash, logs, block=100) -> TxReceipt:
    return TxReceipt(transaction_hash=tx_hash, block_number=block, logs=list(logs), status=1)


class FakeChainProvider(IChainDataProvider):
    """
    In-memory provider.

    Transfers are filtered like the real indexer (category, direction,
    contract) and paginated by `maxCount` with numeric page keys.
    """

    def __init__(self, records=None, receipts=None, latest_block=1000, block_timestamp=1736510400):
        self.records: List[TransferRecord] = list(records or [])
        self.receipts: Dict[str, TxReceipt] = dict(receipts or {})
        self.latest_block = latest_block
        self.block_timestamp = block_timestamp
        self.transfer_calls: List[dict] = []
        self.receipt_calls: List[str] = []
        self.eth_calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.eth_call_result: Optional[str] = None
        self._lock = threading.Lock()

    def fail_next(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _maybe_fail(self, method: str) -> None:
        with self._lock:
            queue = self.failures.get(method)
            error = queue.pop(0) if queue else None
        if error is not None:
            raise error

    def get_latest_block(self) -> int:
        self._maybe_fail('get_latest_block')
        return self.latest_block

    def get_block_timestamp(self, block_number: int) -> int:
        self._maybe_fail('get_block_timestamp')
        return self.block_timestamp

    def get_transaction_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        with self._lock:
            self.receipt_calls.append(tx_hash)
        self._maybe_fail('get_transaction_receipt')
        return self.receipts.get(tx_hash)

    def get_asset_transfers(self, transfer_filter: dict) -> TransferPage:
        with self._lock:
            self.transfer_calls.append(dict(transfer_filter))
        self._maybe_fail('get_asset_transfers')

        category = transfer_filter['category'][0]
        contracts = [c.lower() for c in transfer_filter.get('contractAddresses') or []]
        to_address = (transfer_filter.get('toAddress') or '').lower()
        from_address = (transfer_filter.get('fromAddress') or '').lower()

        matching = [
            r for r in self.records
            if r.category == category
            and (not contracts or r.contract_address in contracts)
            and ((to_address and r.to_address == to_address) or (from_address and r.from_address == from_address))
        ]
        size = int(transfer_filter['maxCount'], 16)
        start = int(transfer_filter.get('pageKey') or 0)
        end = start + size
        return TransferPage(records=matching[start:end], page_key=str(end) if end < len(matching) else None)

    def eth_call(self, to: str, data: str) -> str:
        with self._lock:
            self.eth_calls.append((to, data))
        self._maybe_fail('eth_call')
        return self.eth_call_result or '0x'


class FakePriceReader(IPriceReader):
    """Prices by (pair, token id); ids missing from `prices` read as 0."""

    def __init__(self, prices=None, failing_pairs=()):
        self.prices: Dict[tuple, int] = dict(prices or {})
        self.failing_pairs = set(failing_pairs)
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def get_prices(self, pair_contract, token_ids):
        with self._lock:
            self.calls.append((pair_contract, list(token_ids)))
        if pair_contract in self.failing_pairs:
            raise TransientNetworkError('pair unavailable', method='eth_call')
        return [self.prices.get((pair_contract, token_id), 0) for token_id in token_ids]


class MemoryCache(ICacheStore):
    def __init__(self):
        self.store = {}

    def get_json(self, key):
        return self.store.get(key)

    def set_json(self, key, value, ttl=None):
        self.store[key] = value
        return True

    def set_raw(self, key, raw, ttl=None):
        self.store[key] = raw
        return True


def transient(message='rate limited'):
    return TransientNetworkError(message, method='test')


class MockScanner:
    """Stands in for PortfolioScanner; `gate` blocks run() until set."""

    def __init__(self, payload=None, error=None, gate=None):
        self.payload = payload if payload is not None else {'ok': True}
        self.error = error
        self.gate = gate
        self.runs = 0
        self.params = []

    def run(self, params, deadline=None):
        self.runs += 1
        self.params.append(params)
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return dict(self.payload, address=params.address)


class DeferredRunner:
    """Collects jobs instead of starting threads; run_all() executes them inline."""

    def __init__(self):
        self.pending = []

    def __call__(self, fn):
        self.pending.append(fn)

    def run_all(self):
        while self.pending:
            self.pending.pop(0)()
