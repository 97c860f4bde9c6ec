import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from src.api.exceptions import ChainProviderError
from src.api.models import TransferCategory, TransferDirection, TransferRecord
from src.interfaces.chain_provider import IChainDataProvider
from src.services.concurrency import Deadline
from src.services.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class TransferStream:
    """All pages fetched for one (category, direction) of a wallet."""

    category: TransferCategory
    direction: TransferDirection
    records: List[TransferRecord] = field(default_factory=list)
    pages_fetched: int = 0
    page_key: Optional[str] = None
    truncated_by_page_cap: bool = False
    truncated_by_budget: bool = False
    error: Optional[str] = None

    @property
    def name(self) -> str:
        prefix = "share" if self.category == TransferCategory.SHARE else "currency"
        return f"{prefix}_{self.direction.value}"

    @property
    def complete(self) -> bool:
        return self.page_key is None and self.error is None


@dataclass
class WalletTransfers:
    share_streams: List[TransferStream]
    currency_streams: List[TransferStream]

    @property
    def streams(self) -> List[TransferStream]:
        return self.share_streams + self.currency_streams

    @property
    def share_records(self) -> List[TransferRecord]:
        return dedupe_transfers(r for s in self.share_streams for r in s.records)

    @property
    def currency_records(self) -> List[TransferRecord]:
        return dedupe_transfers(r for s in self.currency_streams for r in s.records)

    @property
    def truncated_by_budget(self) -> bool:
        return any(s.truncated_by_budget for s in self.streams)

    @property
    def complete(self) -> bool:
        return all(s.complete for s in self.streams)


def dedupe_transfers(records) -> List[TransferRecord]:
    """Drop repeated records (incoming and outgoing streams overlap on self-transfers)."""
    by_id: Dict[str, TransferRecord] = {}
    for record in records:
        by_id.setdefault(record.dedupe_key, record)
    return list(by_id.values())


class TransferService:
    """
    Service for fetching a wallet's indexed transfers.

    Independent (category, direction) streams run concurrently; pages inside
    a stream are sequential because each cursor comes from the previous page.
    """

    DEFAULT_MAX_COUNT = "0x3e8"  # 1000 per page

    def __init__(
        self,
        provider: IChainDataProvider,
        retry_policy: Optional[RetryPolicy] = None,
        max_streams: int = 4,
    ):
        self._provider = provider
        self._retry = retry_policy or RetryPolicy()
        self._max_streams = max(1, max_streams)

    def fetch_stream(
        self,
        wallet_address: str,
        direction: TransferDirection,
        category: TransferCategory,
        max_pages: int,
        max_count: str = DEFAULT_MAX_COUNT,
        contract_addresses: Optional[Sequence[str]] = None,
        to_block: str = "latest",
        deadline: Optional[Deadline] = None,
    ) -> TransferStream:
        """
        Fetch up to `max_pages` pages of one stream.

        The first page is always fetched; later pages are skipped once the
        deadline has passed, leaving the cursor in `page_key`.
        """
        stream = TransferStream(category=category, direction=direction)
        base_filter = {
            "fromBlock": "0x0",
            "toBlock": to_block,
            "category": [category.value],
            "withMetadata": True,
            "maxCount": max_count,
            "order": "desc",
        }
        if contract_addresses:
            base_filter["contractAddresses"] = list(contract_addresses)
        if direction == TransferDirection.INCOMING:
            base_filter["toAddress"] = wallet_address
        else:
            base_filter["fromAddress"] = wallet_address

        page_key = None
        while True:
            if stream.pages_fetched >= max_pages:
                stream.truncated_by_page_cap = page_key is not None
                break
            if stream.pages_fetched > 0 and deadline is not None and deadline.expired():
                stream.truncated_by_budget = True
                break

            transfer_filter = dict(base_filter)
            if page_key:
                transfer_filter["pageKey"] = page_key
            page = self._retry.call(self._provider.get_asset_transfers, transfer_filter)

            stream.records.extend(page.records)
            stream.pages_fetched += 1
            page_key = page.page_key
            if not page_key:
                break

        stream.page_key = page_key
        logger.debug(
            f"Stream {stream.name} for {wallet_address}: {len(stream.records)} records, "
            f"{stream.pages_fetched} pages, more={page_key is not None}"
        )
        return stream

    def fetch_wallet_transfers(
        self,
        wallet_address: str,
        share_contracts: Sequence[str],
        currency_contract: str,
        max_pages: int,
        max_count: str = DEFAULT_MAX_COUNT,
        to_block: str = "latest",
        deadline: Optional[Deadline] = None,
    ) -> WalletTransfers:
        """
        Fetch share-token and stablecoin transfers in both directions.

        Share streams are mandatory: their errors propagate. Stablecoin streams
        are enrichment: an error is recorded on the stream and the scan goes on.
        """
        plan = [
            (TransferCategory.SHARE, TransferDirection.INCOMING, share_contracts),
            (TransferCategory.SHARE, TransferDirection.OUTGOING, share_contracts),
            (TransferCategory.CURRENCY, TransferDirection.INCOMING, [currency_contract]),
            (TransferCategory.CURRENCY, TransferDirection.OUTGOING, [currency_contract]),
        ]

        with ThreadPoolExecutor(max_workers=min(self._max_streams, len(plan))) as executor:
            futures = [
                executor.submit(
                    self.fetch_stream,
                    wallet_address,
                    direction,
                    category,
                    max_pages,
                    max_count,
                    contracts,
                    to_block,
                    deadline,
                )
                for category, direction, contracts in plan
            ]

            share_streams = [futures[0].result(), futures[1].result()]
            currency_streams = []
            for (category, direction, _), future in zip(plan[2:], futures[2:]):
                try:
                    currency_streams.append(future.result())
                except ChainProviderError as e:
                    logger.warning(f"Stablecoin {direction.value} transfers failed for {wallet_address}: {e}")
                    currency_streams.append(TransferStream(category=category, direction=direction, error=str(e)))

        return WalletTransfers(share_streams=share_streams, currency_streams=currency_streams)
