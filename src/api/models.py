from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from src.api.exceptions import ParseError


class TransferCategory(Enum):
    SHARE = "erc1155"
    CURRENCY = "erc20"


class TransferDirection(Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


def parse_int(value) -> int:
    """
    Parse a provider quantity into an int.

    Accepts non-negative ints, 0x-prefixed hex strings and unsigned base-10
    strings. Anything else raises ParseError so the caller can skip the
    offending record.
    """
    if isinstance(value, bool):
        raise ParseError(f"Expected a quantity, got bool {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ParseError(f"Negative quantity {value!r}")
        return value
    if not isinstance(value, str):
        raise ParseError(f"Expected a quantity string, got {type(value).__name__}")
    text = value.strip()
    if text[:2].lower() == "0x":
        digits, base = text[2:], 16
    else:
        digits, base = text, 10
    # int() would also take a sign, spaces or underscores here.
    if not digits or not digits[0].isalnum() or "_" in digits:
        raise ParseError(f"Malformed quantity {value!r}")
    try:
        return int(digits, base)
    except ValueError:
        raise ParseError(f"Malformed quantity {value!r}")


def parse_block_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 block timestamp (e.g. 2025-01-10T12:00:00.000Z) as UTC."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_address(address: Optional[str]) -> str:
    return (address or "").strip().lower()


@dataclass
class TransferRecord:
    """
    One record from the bulk transfer indexer (alchemy_getAssetTransfers).

    Amounts are kept as the raw strings the provider returned; they are only
    parsed by the Raw Delta Aggregator, which skips records that fail to parse.
    """

    unique_id: Optional[str]
    tx_hash: Optional[str]
    from_address: str
    to_address: str
    category: str
    contract_address: str
    raw_value: Optional[str] = None
    erc1155_metadata: List[Tuple[str, str]] = field(default_factory=list)
    block_num: Optional[str] = None
    block_timestamp: Optional[str] = None

    @property
    def dedupe_key(self) -> str:
        if self.unique_id:
            return self.unique_id
        return f"{self.tx_hash or ''}:{self.from_address}:{self.to_address}:{self.category}"

    @property
    def timestamp(self) -> Optional[datetime]:
        return parse_block_timestamp(self.block_timestamp)

    @property
    def block_number(self) -> Optional[int]:
        if self.block_num is None:
            return None
        try:
            return parse_int(self.block_num)
        except ParseError:
            return None

    @property
    def log_index(self) -> Optional[int]:
        """Log index carried in the indexer's uniqueId ('<hash>:log:<index>'), if any."""
        if not self.unique_id or ":log:" not in self.unique_id:
            return None
        try:
            return parse_int(self.unique_id.rsplit(":log:", 1)[1])
        except ParseError:
            return None

    @classmethod
    def from_api_response(cls, data: dict) -> "TransferRecord":
        """Factory method to create a TransferRecord from an indexer response item."""
        raw_contract = data.get("rawContract") or {}
        metadata = data.get("metadata") or {}
        erc1155 = [
            (item.get("tokenId"), item.get("value"))
            for item in (data.get("erc1155Metadata") or [])
        ]
        return cls(
            unique_id=data.get("uniqueId"),
            tx_hash=normalize_address(data.get("hash")) or None,
            from_address=normalize_address(data.get("from")),
            to_address=normalize_address(data.get("to")),
            category=data.get("category") or "",
            contract_address=normalize_address(raw_contract.get("address")),
            raw_value=raw_contract.get("value"),
            erc1155_metadata=erc1155,
            block_num=data.get("blockNum"),
            block_timestamp=metadata.get("blockTimestamp"),
        )


@dataclass
class TransferPage:
    records: List[TransferRecord]
    page_key: Optional[str] = None


@dataclass
class ReceiptLog:
    address: str
    topics: List[str]
    data: str
    log_index: Optional[int] = None

    @property
    def topic0(self) -> str:
        return self.topics[0].lower() if self.topics else "0x"

    @classmethod
    def from_api_response(cls, data: dict) -> "ReceiptLog":
        log_index = data.get("logIndex")
        try:
            log_index = parse_int(log_index) if log_index is not None else None
        except ParseError:
            log_index = None
        return cls(
            address=normalize_address(data.get("address")),
            topics=[str(t).lower() for t in (data.get("topics") or [])],
            data=data.get("data") or "0x",
            log_index=log_index,
        )

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "topics": list(self.topics),
            "data": self.data,
            "logIndex": hex(self.log_index) if self.log_index is not None else None,
        }


@dataclass
class TxReceipt:
    """Transaction receipt as returned by eth_getTransactionReceipt."""

    transaction_hash: str
    block_number: Optional[int]
    logs: List[ReceiptLog] = field(default_factory=list)
    status: Optional[int] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "TxReceipt":
        block_number = data.get("blockNumber")
        status = data.get("status")
        try:
            block_number = parse_int(block_number) if block_number is not None else None
        except ParseError:
            block_number = None
        try:
            status = parse_int(status) if status is not None else None
        except ParseError:
            status = None
        return cls(
            transaction_hash=normalize_address(data.get("transactionHash")),
            block_number=block_number,
            logs=[ReceiptLog.from_api_response(log) for log in (data.get("logs") or [])],
            status=status,
        )

    def to_dict(self) -> dict:
        """Convert back to the provider's JSON shape (used for caching)."""
        return {
            "transactionHash": self.transaction_hash,
            "blockNumber": hex(self.block_number) if self.block_number is not None else None,
            "status": hex(self.status) if self.status is not None else None,
            "logs": [log.to_dict() for log in self.logs],
        }
