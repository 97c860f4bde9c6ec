from abc import ABC, abstractmethod
from typing import Optional

from src.api.models import TransferPage, TxReceipt


class IChainDataProvider(ABC):
    """
    Interface for reading chain data (Interface Segregation Principle).

    Implementations must be safe to call from several threads at once.
    Failures are raised as TransientNetworkError (retryable) or
    PermanentNetworkError (not retryable).
    """

    @abstractmethod
    def get_latest_block(self) -> int:
        """Return the latest block number."""
        pass

    @abstractmethod
    def get_block_timestamp(self, block_number: int) -> int:
        """Return the unix timestamp of a block."""
        pass

    @abstractmethod
    def get_transaction_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Return the receipt of a transaction, or None if it is unknown."""
        pass

    @abstractmethod
    def get_asset_transfers(self, transfer_filter: dict) -> TransferPage:
        """Return one page of indexed asset transfers for a filter."""
        pass

    @abstractmethod
    def eth_call(self, to: str, data: str) -> str:
        """Execute a read-only call at the latest block and return the hex result."""
        pass
