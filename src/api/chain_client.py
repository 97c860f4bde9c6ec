import itertools
import json
import logging
from typing import Any, List, Optional

import requests

from src.api.exceptions import PermanentNetworkError, TransientNetworkError
from src.api.models import TransferPage, TransferRecord, TxReceipt, parse_int
from src.interfaces.chain_provider import IChainDataProvider

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429}
RATE_LIMIT_MARKERS = ("too many requests", "rate limit", "throughput", "compute units per second")


def is_rate_limit_message(message: str) -> bool:
    normalized = (message or "").lower()
    return any(marker in normalized for marker in RATE_LIMIT_MARKERS)


class AlchemyClient(IChainDataProvider):
    """
    JSON-RPC client for an Alchemy-compatible Base mainnet endpoint.

    Performs a single attempt per call and classifies failures as transient
    or permanent; retries are the caller's policy (see src.services.retry).
    """

    BASE_URL_TEMPLATE = "https://base-mainnet.g.alchemy.com/v2/{api_key}"
    DEFAULT_TIMEOUT = 30
    MAX_ERROR_DETAIL = 500

    def __init__(
        self,
        api_key: Optional[str] = None,
        rpc_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        if rpc_url:
            self._url = rpc_url
        elif api_key:
            self._url = self.BASE_URL_TEMPLATE.format(api_key=api_key)
        else:
            self._url = None
        self._timeout = timeout
        self._ids = itertools.count(1)
        self._session = session or requests.Session()
        self._session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "SportfunPortfolioScanner/1.0"
        })

    def rpc(self, method: str, params: List[Any]) -> Any:
        """Send one JSON-RPC request and return its `result`."""
        if not self._url:
            raise PermanentNetworkError(
                "ALCHEMY_API_KEY is not set. Configure it (or BASE_RPC_URL) to enable wallet scans.",
                method=method,
            )

        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._session.post(self._url, data=json.dumps(payload), timeout=self._timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientNetworkError(f"RPC {method} transport error: {e}", method=method)
        except requests.RequestException as e:
            raise PermanentNetworkError(f"RPC {method} request failed: {e}", method=method)

        if response.status_code != 200:
            detail = self._error_detail(response.text)
            retryable = (
                response.status_code in RETRYABLE_STATUS_CODES
                or response.status_code >= 500
                or is_rate_limit_message(detail)
            )
            error_cls = TransientNetworkError if retryable else PermanentNetworkError
            raise error_cls(
                f"RPC {method} failed: {response.status_code} {detail}".strip(),
                method=method,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            raise TransientNetworkError(f"RPC {method} returned a non-JSON body", method=method)

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = error.get("message") or "Unknown error"
            if error.get("code") is not None:
                message = f"{error['code']} {message}"
            error_cls = TransientNetworkError if is_rate_limit_message(message) else PermanentNetworkError
            raise error_cls(f"RPC {method} error: {message}", method=method)

        return body.get("result") if isinstance(body, dict) else None

    def get_latest_block(self) -> int:
        return parse_int(self.rpc("eth_blockNumber", []))

    def get_block_timestamp(self, block_number: int) -> int:
        block = self.rpc("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            raise PermanentNetworkError(f"Block {block_number} not found", method="eth_getBlockByNumber")
        return parse_int(block.get("timestamp"))

    def get_transaction_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        result = self.rpc("eth_getTransactionReceipt", [tx_hash])
        if not result:
            return None
        return TxReceipt.from_api_response(result)

    def get_asset_transfers(self, transfer_filter: dict) -> TransferPage:
        result = self.rpc("alchemy_getAssetTransfers", [transfer_filter]) or {}
        records = [TransferRecord.from_api_response(t) for t in (result.get("transfers") or [])]
        return TransferPage(records=records, page_key=result.get("pageKey"))

    def eth_call(self, to: str, data: str) -> str:
        return self.rpc("eth_call", [{"to": to, "data": data}, "latest"])

    def _error_detail(self, raw: str) -> str:
        detail = (raw or "").strip()
        if not detail:
            return ""
        try:
            parsed = json.loads(detail)
            message = (parsed.get("error") or {}).get("message")
            if message:
                detail = message
        except (ValueError, AttributeError):
            pass
        if len(detail) > self.MAX_ERROR_DETAIL:
            detail = detail[:self.MAX_ERROR_DETAIL] + "..."
        return detail

    @staticmethod
    def validate_wallet_address(address: str) -> None:
        """Validate Ethereum wallet address format."""
        if not address.startswith("0x"):
            raise ValueError("Wallet address must start with '0x'")
        if len(address) != 42:
            raise ValueError("Wallet address must be 42 characters")
        try:
            int(address[2:], 16)
        except ValueError:
            raise ValueError("Invalid hexadecimal in wallet address")
