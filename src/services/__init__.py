from .concurrency import Deadline, Outcome, map_limit
from .retry import RetryPolicy
from .transfer_service import TransferService, TransferStream, WalletTransfers

__all__ = [
    "Deadline",
    "Outcome",
    "map_limit",
    "RetryPolicy",
    "TransferService",
    "TransferStream",
    "WalletTransfers",
]
