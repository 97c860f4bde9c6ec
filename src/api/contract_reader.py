"""
Read-only contract calls used for valuation and display.

- getPrices(uint256[]) on a pair contract: current stablecoin price per share
- uri(uint256) on an ERC-1155 contract: metadata URI template
"""

from typing import List, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import decode_hex, function_signature_to_4byte_selector

from src.api.exceptions import DecodeError
from src.interfaces.chain_provider import IChainDataProvider
from src.interfaces.price_reader import IPriceReader

GET_PRICES_SELECTOR = function_signature_to_4byte_selector("getPrices(uint256[])")
URI_SELECTOR = function_signature_to_4byte_selector("uri(uint256)")


def encode_call(selector: bytes, types: List[str], args: list) -> str:
    return "0x" + (selector + encode(types, args)).hex()


def decode_result(types: List[str], result: str) -> tuple:
    try:
        return decode(types, decode_hex(result or "0x"))
    except (DecodingError, ValueError) as e:
        raise DecodeError(f"Could not decode call result as {types}: {e}")


class ContractReader(IPriceReader):
    """Encodes and decodes the protocol's view calls on top of a chain provider."""

    def __init__(self, provider: IChainDataProvider):
        self._provider = provider

    def get_prices(self, pair_contract: str, token_ids: Sequence[int]) -> List[int]:
        """Return the price per share (stablecoin base units per 1e18 shares) for each token id."""
        data = encode_call(GET_PRICES_SELECTOR, ["uint256[]"], [list(token_ids)])
        result = self._provider.eth_call(pair_contract, data)
        (prices,) = decode_result(["uint256[]"], result)
        return list(prices)

    def token_uri(self, contract_address: str, token_id: int) -> str:
        data = encode_call(URI_SELECTOR, ["uint256"], [token_id])
        result = self._provider.eth_call(contract_address, data)
        (uri,) = decode_result(["string"], result)
        return str(uri)
