"""
Scan Orchestrator.

Wraps the engine (raw deltas -> decoding -> reconciliation -> ledger replay)
with every timing, concurrency, retry and caching decision:

- default mode: synchronous, soft wall-clock deadline, page-capped
- full mode: no deadline; run off the request path by ScanJobManager

Mandatory work (the share transfer streams) propagates its errors. Optional
enrichment (stablecoin transfers, receipts, prices, URIs, metadata) is run as
Outcome-returning units whose failures land in completeness.errors.
"""

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from src.api.chain_client import AlchemyClient
from src.api.contract_reader import ContractReader
from src.api.exceptions import ChainProviderError, ParseError
from src.api.models import TxReceipt, normalize_address
from src.interfaces.cache_store import ICacheStore
from src.interfaces.chain_provider import IChainDataProvider
from src.interfaces.metadata_resolver import IMetadataResolver
from src.interfaces.price_reader import IPriceReader
from src.services.concurrency import Deadline, Outcome, map_limit
from src.services.retry import RetryPolicy
from src.services.transfer_service import TransferService, WalletTransfers

from . import constants
from .calculators import (
    LedgerBuilder,
    PositionTracker,
    PriceFetcher,
    ProtocolEventDecoder,
    RawDeltaAggregator,
    RealizedPnLDailyAggregator,
    RealizedPnLTokenAggregator,
    Reconciler,
    receipt_currency_delta,
    value_portfolio,
)
from .calculators.raw_deltas import ActivityItem
from .calculators.types import DecodedReceipt, TokenKey
from .conf import ScanSettings

logger = logging.getLogger(__name__)

SCAN_MODE_DEFAULT = 'default'
SCAN_MODE_FULL = 'full'
SCAN_MODES = (SCAN_MODE_DEFAULT, SCAN_MODE_FULL)

MAX_PAGES_DEFAULT_MODE = 10
MAX_PAGES_FULL_MODE = 200
MAX_ACTIVITY = 500

BUDGET_CATEGORIES = ('transfers', 'receipts', 'prices', 'uri', 'metadata')


@dataclass(frozen=True)
class ScanParams:
    """Every input that can change a scan's payload."""
    address: str
    scan_mode: str = SCAN_MODE_DEFAULT
    max_pages: int = 3
    max_count: str = '0x3e8'
    max_activity: int = 100
    activity_cursor: int = 0
    include_trades: bool = True
    include_prices: bool = True
    include_receipts: bool = False
    include_uri: bool = False
    include_metadata: bool = False
    metadata_limit: int = 50

    @property
    def is_full(self) -> bool:
        return self.scan_mode == SCAN_MODE_FULL

    def normalized(self) -> 'ScanParams':
        """Lower-case the address and clamp caps to the mode's limits."""
        page_cap = MAX_PAGES_FULL_MODE if self.scan_mode == SCAN_MODE_FULL else MAX_PAGES_DEFAULT_MODE
        return replace(
            self,
            address=normalize_address(self.address),
            scan_mode=self.scan_mode if self.scan_mode in SCAN_MODES else SCAN_MODE_DEFAULT,
            max_pages=max(1, min(page_cap, int(self.max_pages))),
            max_count=(self.max_count or '0x3e8').lower(),
            max_activity=max(1, min(MAX_ACTIVITY, int(self.max_activity))),
            activity_cursor=max(0, int(self.activity_cursor)),
            metadata_limit=max(0, int(self.metadata_limit)),
        )

    def to_query(self) -> dict:
        query = asdict(self)
        del query['address']
        return query

    def cache_key(self) -> str:
        """First 16 hex chars of SHA-1 over the canonical JSON of the normalized params."""
        canonical = json.dumps(asdict(self.normalized()), sort_keys=True, separators=(',', ':'))
        return hashlib.sha1(canonical.encode('utf-8')).hexdigest()[:16]


class ScanReport:
    """Completeness bookkeeping for one scan."""

    def __init__(self):
        self.truncated_by_budget = {category: False for category in BUDGET_CATEGORIES}
        self.errors: List[dict] = []

    def error(self, category: str, message: str) -> None:
        self.errors.append({'category': category, 'message': message})

    def record_outcomes(self, category: str, outcomes: List[Outcome], label) -> None:
        for item, outcome in outcomes:
            if outcome.skipped:
                self.truncated_by_budget[category] = True
            elif outcome.error is not None:
                self.error(category, f'{label(item)}: {outcome.error}')


class PortfolioScanner:
    """
    Reconstructs one wallet's player-share portfolio.

    Collaborators are injected; the scanner holds no process-wide state.
    """

    def __init__(
        self,
        provider: IChainDataProvider,
        settings: ScanSettings,
        cache: Optional[ICacheStore] = None,
        metadata_resolver: Optional[IMetadataResolver] = None,
        price_reader: Optional[IPriceReader] = None,
        contract_reader: Optional[ContractReader] = None,
    ):
        self.provider = provider
        self.settings = settings
        self.cache = cache
        self.metadata_resolver = metadata_resolver
        self.contract_reader = contract_reader or ContractReader(provider)
        self.price_reader = price_reader or self.contract_reader
        self.retry = RetryPolicy(attempts=settings.retry_attempts, base_delay=settings.retry_base_delay)
        self.uri_retry = RetryPolicy(attempts=settings.uri_retry_attempts, base_delay=settings.uri_retry_base_delay)
        self.transfer_service = TransferService(provider, self.retry, max_streams=settings.transfer_streams)
        self.decoder = ProtocolEventDecoder()

    def deadline_for(self, params: ScanParams) -> Deadline:
        if params.is_full:
            return Deadline.unbounded()
        return Deadline(self.settings.default_deadline_seconds)

    def run(self, params: ScanParams, deadline: Optional[Deadline] = None) -> dict:
        params = params.normalized()
        AlchemyClient.validate_wallet_address(params.address)
        deadline = deadline or self.deadline_for(params)
        wallet = params.address
        report = ScanReport()

        logger.info(f'Scanning {wallet} (mode={params.scan_mode}, max_pages={params.max_pages})')

        as_of, to_block = self._pin_block(report)

        transfers = self.transfer_service.fetch_wallet_transfers(
            wallet,
            share_contracts=constants.SHARE_CONTRACTS,
            currency_contract=constants.BASE_USDC,
            max_pages=params.max_pages,
            max_count=params.max_count,
            to_block=to_block,
            deadline=deadline,
        )
        report.truncated_by_budget['transfers'] = transfers.truncated_by_budget
        for stream in transfers.currency_streams:
            if stream.error:
                report.error('transfers', f'{stream.name}: {stream.error}')

        aggregator = RawDeltaAggregator(wallet, constants.SHARE_CONTRACTS, constants.BASE_USDC)
        raw = aggregator.aggregate(transfers.share_records, transfers.currency_records)
        activity_all = aggregator.build_activity(raw)

        start = params.activity_cursor
        page = activity_all[start:start + params.max_activity]
        next_cursor = start + len(page) if start + len(page) < len(activity_all) else None

        receipts: Dict[str, TxReceipt] = {}
        if params.include_trades or params.include_receipts:
            scope = activity_all if params.is_full else page
            receipts = self._fetch_receipts([a.tx_hash for a in scope], deadline, report)

        decoded_by_tx: Dict[str, DecodedReceipt] = {}
        receipt_usdc_by_tx: Dict[str, int] = {}
        if params.include_trades:
            for tx_hash, receipt in receipts.items():
                decoded_by_tx[tx_hash] = self.decoder.decode_receipt(receipt, wallet)
        for tx_hash, receipt in receipts.items():
            usdc = receipt_currency_delta(receipt, wallet, constants.BASE_USDC)
            if usdc is not None:
                receipt_usdc_by_tx[tx_hash] = usdc

        tx_order = [a.tx_hash for a in activity_all]
        inferred_by_tx = {a.tx_hash: a.inferred for a in activity_all}
        reconciliation = Reconciler(self.settings.mismatch_sample_limit).reconcile(
            tx_order, raw.raw_delta_by_tx, decoded_by_tx, inferred_by_tx,
        )
        ledger = LedgerBuilder().build(
            reversed(tx_order),  # chain order, oldest first
            decoded_by_tx,
            reconciliation.transfers_by_tx,
            inferred_by_tx,
            raw.timestamp_by_tx,
            raw.block_by_tx,
        )
        replay = PositionTracker().replay(ledger, wallet)

        holdings = raw.sorted_holdings()
        prices: Dict[TokenKey, int] = {}
        if params.include_prices and holdings:
            fetched = PriceFetcher(self.price_reader, self.retry, self.settings.price_batch_size).fetch(
                [key for key, _ in holdings], deadline,
            )
            prices = fetched.prices
            report.truncated_by_budget['prices'] = fetched.truncated_by_budget
            for message in fetched.errors:
                report.error('prices', message)

        uris: Dict[TokenKey, Outcome] = {}
        if params.include_uri or params.include_metadata:
            uris = self._fetch_uris([key for key, _ in holdings], deadline, report)

        metadata: Dict[TokenKey, Outcome] = {}
        if params.include_metadata and self.metadata_resolver is not None:
            keys = [key for key, _ in holdings][:params.metadata_limit]
            metadata = self._fetch_metadata(keys, uris, deadline, report)

        valuation = value_portfolio(holdings, replay, prices)

        activity_payload = [
            self._activity_item(a, decoded_by_tx, receipt_usdc_by_tx, reconciliation.transfers_by_tx,
                                receipts if params.include_receipts else {})
            for a in page
        ]
        decoded_trade_count = sum(len(d.trades) for d in decoded_by_tx.values())
        decoded_promotion_count = sum(len(d.promotions) for d in decoded_by_tx.values())
        unknown_log_count = sum(len(d.unknown_logs) for d in decoded_by_tx.values())

        completeness = self._completeness(transfers, report)
        logger.info(
            f'Scanned {wallet}: {len(holdings)} holdings, {len(activity_all)} transactions, '
            f'{len(receipts)} receipts, {reconciliation.mismatch_count} reconciled deltas, '
            f'incomplete={completeness["scan_incomplete"]}'
        )

        return {
            'chain': constants.CHAIN,
            'protocol': constants.PROTOCOL,
            'address': wallet,
            'query': params.to_query(),
            'as_of': as_of,
            'summary': {
                'share_transfer_count': raw.share_transfer_count,
                'currency_transfer_count': raw.currency_transfer_count,
                'contract_count': len(raw.contracts),
                'holding_count': len(holdings),
                'activity_count_total': len(activity_all),
                'activity_count_returned': len(page),
                'activity_truncated': next_cursor is not None,
                'next_activity_cursor': next_cursor,
                'receipt_count': len(receipts),
                'decoded_trade_count': decoded_trade_count,
                'decoded_promotion_count': decoded_promotion_count,
                'unknown_log_count': unknown_log_count,
                'share_delta_mismatch_count': reconciliation.mismatch_count,
                'share_delta_mismatch_tx_count': reconciliation.mismatch_tx_count,
                'reconciled_transfer_in_count': replay.reconciled_transfer_in_count,
                'reconciled_transfer_out_count': replay.reconciled_transfer_out_count,
                'parse_error_count': raw.parse_error_count,
            },
            'completeness': completeness,
            'holdings': [self._holding_item(key, balance, prices, uris, metadata) for key, balance in holdings],
            'activity': activity_payload,
            'analytics': {
                'realized_pnl_usdc_raw': str(replay.realized_pnl),
                'unrealized_pnl_usdc_raw': str(valuation.unrealized_pnl),
                'total_cost_basis_usdc_raw': str(replay.total_cost_basis),
                'current_value_usdc_raw': str(valuation.current_value),
                'current_value_all_holdings_usdc_raw': str(valuation.current_value_all_holdings),
                'holdings_priced_count': valuation.holdings_priced_count,
                'cost_basis_unknown_trade_count': replay.unknown_cost_buy_count,
                'gift_buy_count': replay.gift_buy_count,
                'sell_no_proceeds_count': replay.proceeds_redirected_count,
                'negative_position_count': replay.negative_position_count,
                'reconciled_transfer_in_count': replay.reconciled_transfer_in_count,
                'reconciled_transfer_out_count': replay.reconciled_transfer_out_count,
                'ledger_entry_count': len(ledger),
                'positions_by_token': valuation.positions_by_token,
                'realized_pnl_by_token': RealizedPnLTokenAggregator().aggregate(replay.realized_events),
                'daily_realized_pnl': RealizedPnLDailyAggregator().aggregate(replay.realized_events),
            },
            'debug': {
                'contracts': raw.contracts,
                'contract_mapping': constants.contract_mapping(),
                'share_delta_mismatch_samples': reconciliation.samples,
            },
        }

    def _pin_block(self, report: ScanReport) -> Tuple[Optional[dict], str]:
        """Pin every transfer stream to the current head; fall back to 'latest'."""
        try:
            block = self.retry.call(self.provider.get_latest_block)
            timestamp = self.retry.call(self.provider.get_block_timestamp, block)
        except (ChainProviderError, ParseError) as e:
            logger.warning(f'Could not pin scan to a block: {e}')
            report.error('as_of', str(e))
            return None, 'latest'
        as_of = {
            'block_number': block,
            'timestamp': datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(),
        }
        return as_of, hex(block)

    def _load_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        cache_key = f'receipt:{tx_hash}'
        if self.cache is not None:
            cached = self.cache.get_json(cache_key)
            if cached:
                return TxReceipt.from_api_response(cached)
        receipt = self.retry.call(self.provider.get_transaction_receipt, tx_hash)
        if receipt is not None and self.cache is not None:
            self.cache.set_json(cache_key, receipt.to_dict(), ttl=self.settings.receipt_ttl_seconds)
        return receipt

    def _fetch_receipts(self, hashes: List[str], deadline: Deadline, report: ScanReport) -> Dict[str, TxReceipt]:
        outcomes = map_limit(hashes, self.settings.receipt_concurrency, self._load_receipt, deadline)
        report.record_outcomes('receipts', list(zip(hashes, outcomes)), lambda h: h)
        receipts = {}
        for tx_hash, outcome in zip(hashes, outcomes):
            if outcome.ok and outcome.value is not None:
                receipts[tx_hash] = outcome.value
        return receipts

    def _fetch_uris(self, keys: List[TokenKey], deadline: Deadline, report: ScanReport) -> Dict[TokenKey, Outcome]:
        def lookup(key: TokenKey) -> str:
            return self.uri_retry.call(self.contract_reader.token_uri, key.contract_address, key.token_id)

        outcomes = map_limit(keys, self.settings.metadata_concurrency, lookup, deadline)
        report.record_outcomes('uri', list(zip(keys, outcomes)), str)
        return dict(zip(keys, outcomes))

    def _fetch_metadata(
        self,
        keys: List[TokenKey],
        uris: Dict[TokenKey, Outcome],
        deadline: Deadline,
        report: ScanReport,
    ) -> Dict[TokenKey, Outcome]:
        template = self.settings.metadata_template

        def lookup(key: TokenKey):
            uri_outcome = uris.get(key)
            uri = uri_outcome.value if uri_outcome is not None and uri_outcome.ok else None
            return self.metadata_resolver.resolve_uri(uri, key.token_id, template)

        outcomes = map_limit(keys, self.settings.metadata_concurrency, lookup, deadline)
        report.record_outcomes('metadata', list(zip(keys, outcomes)), str)
        return dict(zip(keys, outcomes))

    @staticmethod
    def _holding_item(
        key: TokenKey,
        balance: int,
        prices: Dict[TokenKey, int],
        uris: Dict[TokenKey, Outcome],
        metadata: Dict[TokenKey, Outcome],
    ) -> dict:
        price = prices.get(key)
        item = {
            'contract_address': key.contract_address,
            'token_id_hex': key.token_id_hex,
            'token_id_dec': key.token_id_dec,
            'balance_raw': str(balance),
            'price_usdc_per_share_raw': str(price) if price is not None else None,
            'value_usdc_raw': str(price * balance // constants.ONE_SHARE) if price is not None else None,
        }
        uri = uris.get(key)
        if uri is not None:
            item['uri'] = uri.value if uri.ok else None
            item['uri_error'] = str(uri.error) if uri.error is not None else None
        meta = metadata.get(key)
        if meta is not None and meta.ok:
            item['metadata'] = meta.value.metadata
            item['metadata_error'] = meta.value.error
        return item

    @staticmethod
    def _activity_item(
        activity: ActivityItem,
        decoded_by_tx: Dict[str, DecodedReceipt],
        receipt_usdc_by_tx: Dict[str, int],
        reconciled_by_tx: dict,
        receipts: Dict[str, TxReceipt],
    ) -> dict:
        decoded = decoded_by_tx.get(activity.tx_hash)
        receipt_usdc = receipt_usdc_by_tx.get(activity.tx_hash)
        kind = decoded.primary_kind if decoded is not None else None
        reconciled = reconciled_by_tx.get(activity.tx_hash)
        receipt = receipts.get(activity.tx_hash)
        return {
            'tx_hash': activity.tx_hash,
            'timestamp': activity.timestamp.isoformat() if activity.timestamp else None,
            'block_number': activity.block_number,
            'kind': kind or activity.inferred.kind,
            'usdc_delta_raw': str(receipt_usdc if receipt_usdc is not None else activity.currency_delta),
            'usdc_delta_source': 'receipt' if receipt_usdc is not None else 'transfers',
            'share_changes': [
                {
                    'contract_address': key.contract_address,
                    'token_id_hex': key.token_id_hex,
                    'token_id_dec': key.token_id_dec,
                    'delta_raw': str(delta),
                }
                for key, delta in activity.share_changes.items()
            ],
            'inferred': activity.inferred.to_dict(),
            'decoded': decoded.to_dict() if decoded is not None else None,
            'reconciled_transfers': [t.to_dict() for t in reconciled] if reconciled else None,
            'receipt': receipt.to_dict() if receipt is not None else None,
        }

    @staticmethod
    def _completeness(transfers: WalletTransfers, report: ScanReport) -> dict:
        page_keys = {s.name: s.page_key for s in transfers.streams if s.page_key}
        truncated_by_page_cap = {s.name: s.truncated_by_page_cap for s in transfers.streams}
        scan_incomplete = (
            not transfers.complete
            or any(report.truncated_by_budget.values())
            or bool(report.errors)
        )
        return {
            'scan_incomplete': scan_incomplete,
            'truncated_by_budget': dict(report.truncated_by_budget),
            'truncated_by_page_cap': truncated_by_page_cap,
            'page_keys': page_keys,
            'errors': list(report.errors),
        }
