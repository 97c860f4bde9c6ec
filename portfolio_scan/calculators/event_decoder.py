"""
Protocol Event Decoder.

Pure logic, no Django dependencies. Recognizes the protocol's batch events in
a transaction receipt and fans them out into one typed record per token id:

- PlayerTokensPurchase on a pair contract  -> DecodedTradeEvent(BUY)
- CurrencyPurchase on a pair contract      -> DecodedTradeEvent(SELL)
- PlayerSharesPromoted on a promotions contract -> DecodedPromotionEvent

Logs from other contracts are not ours and are skipped. Other topics on an
allow-listed contract are ignored. A log that matches a known topic but fails
to decode becomes an UnknownLog; it never aborts the rest of the receipt.
"""

import logging
from typing import Dict, List, Optional, Sequence

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import decode_hex

from src.api.exceptions import DecodeError, ParseError
from src.api.models import ReceiptLog, TxReceipt, normalize_address, parse_int

from ..constants import (
    BASE_USDC,
    PAIR_EVENT_DATA_TYPES,
    PLAYER_TOKEN_BY_PAIR,
    PLAYER_TOKEN_BY_PROMOTIONS,
    PROMOTION_EVENT_DATA_TYPES,
    TOPIC_CURRENCY_PURCHASE,
    TOPIC_ERC20_TRANSFER,
    TOPIC_PLAYER_SHARES_PROMOTED,
    TOPIC_PLAYER_TOKENS_PURCHASE,
)
from .types import (
    DecodedPromotionEvent,
    DecodedReceipt,
    DecodedTradeEvent,
    TokenKey,
    TradeDirection,
    UnknownLog,
)

logger = logging.getLogger(__name__)


def topic_to_address(topic: str) -> str:
    """Indexed address topic (32 bytes, left padded) -> lower-cased 0x address."""
    text = (topic or '').lower()
    if not text.startswith('0x') or len(text) != 66:
        raise DecodeError(f'Malformed address topic {topic!r}')
    try:
        int(text[2:], 16)
    except ValueError:
        raise DecodeError(f'Malformed address topic {topic!r}')
    return '0x' + text[-40:]


def decode_log_data(types: List[str], data: str) -> tuple:
    try:
        return decode(types, decode_hex(data or '0x'))
    except (DecodingError, ValueError, TypeError) as e:
        raise DecodeError(f'Could not decode log data as {types}: {e}')


def _at(values: Sequence[int], index: int) -> int:
    # Parallel arrays may be shorter than the id array; missing entries count as zero.
    return int(values[index]) if index < len(values) else 0


class ProtocolEventDecoder:
    """
    Decodes the protocol's events from one receipt for one wallet.

    Args:
        pair_contracts: pair contract -> player token contract of its deployment
        promotion_contracts: promotions contract -> player token contract
    """

    def __init__(
        self,
        pair_contracts: Optional[Dict[str, str]] = None,
        promotion_contracts: Optional[Dict[str, str]] = None,
    ):
        self.pair_contracts = {
            normalize_address(k): normalize_address(v)
            for k, v in (PLAYER_TOKEN_BY_PAIR if pair_contracts is None else pair_contracts).items()
        }
        self.promotion_contracts = {
            normalize_address(k): normalize_address(v)
            for k, v in (PLAYER_TOKEN_BY_PROMOTIONS if promotion_contracts is None else promotion_contracts).items()
        }

    def decode_receipt(self, receipt: TxReceipt, wallet_address: str) -> DecodedReceipt:
        wallet = normalize_address(wallet_address)
        decoded = DecodedReceipt()

        for log in receipt.logs:
            address = normalize_address(log.address)
            if address in self.pair_contracts:
                handler = {
                    TOPIC_PLAYER_TOKENS_PURCHASE: self._decode_purchase,
                    TOPIC_CURRENCY_PURCHASE: self._decode_sale,
                }.get(log.topic0)
                player_token = self.pair_contracts[address]
            elif address in self.promotion_contracts:
                handler = {
                    TOPIC_PLAYER_SHARES_PROMOTED: self._decode_promotion,
                }.get(log.topic0)
                player_token = self.promotion_contracts[address]
            else:
                continue

            if handler is None:
                continue

            try:
                handler(log, address, player_token, wallet, decoded)
            except DecodeError as e:
                logger.warning(f'Undecodable log {log.topic0} on {address} in {receipt.transaction_hash}: {e}')
                decoded.unknown_logs.append(UnknownLog(
                    address=address,
                    topic0=log.topic0,
                    topics=tuple(log.topics),
                    data=log.data,
                    error=str(e),
                    log_index=log.log_index,
                ))

        return decoded

    def _decode_purchase(self, log: ReceiptLog, pair: str, player_token: str, wallet: str, out: DecodedReceipt):
        """PlayerTokensPurchase: the recipient gets the shares, the buyer pays currency + fee."""
        buyer, recipient = self._indexed_parties(log)
        ids, amounts, currency, _new_prices, fees = decode_log_data(PAIR_EVENT_DATA_TYPES, log.data)
        trades = []
        for i, token_id in enumerate(ids):
            share_amount = _at(amounts, i)
            spent = _at(currency, i)
            fee = _at(fees, i)
            wallet_share_delta = share_amount if recipient == wallet else 0
            if wallet_share_delta == 0:
                continue
            trades.append(DecodedTradeEvent(
                direction=TradeDirection.BUY,
                pair_contract=pair,
                token_key=TokenKey.of(player_token, token_id),
                share_amount=share_amount,
                currency_amount=spent,
                fee_amount=fee,
                initiator=buyer,
                recipient=recipient,
                wallet_share_delta=wallet_share_delta,
                wallet_currency_delta=-(spent + fee) if buyer == wallet else 0,
                log_index=log.log_index,
            ))
        out.trades.extend(trades)

    def _decode_sale(self, log: ReceiptLog, pair: str, player_token: str, wallet: str, out: DecodedReceipt):
        """CurrencyPurchase: the seller gives up shares, the recipient gets the currency."""
        seller, recipient = self._indexed_parties(log)
        ids, amounts, received, _new_prices, fees = decode_log_data(PAIR_EVENT_DATA_TYPES, log.data)
        trades = []
        for i, token_id in enumerate(ids):
            share_amount = _at(amounts, i)
            proceeds = _at(received, i)
            wallet_share_delta = -share_amount if seller == wallet else 0
            if wallet_share_delta == 0:
                continue
            trades.append(DecodedTradeEvent(
                direction=TradeDirection.SELL,
                pair_contract=pair,
                token_key=TokenKey.of(player_token, token_id),
                share_amount=share_amount,
                currency_amount=proceeds,
                fee_amount=_at(fees, i),
                initiator=seller,
                recipient=recipient,
                wallet_share_delta=wallet_share_delta,
                wallet_currency_delta=proceeds if recipient == wallet else 0,
                log_index=log.log_index,
            ))
        out.trades.extend(trades)

    def _decode_promotion(self, log: ReceiptLog, source: str, player_token: str, wallet: str, out: DecodedReceipt):
        if len(log.topics) < 2:
            raise DecodeError(f'Expected 2 topics, got {len(log.topics)}')
        account = topic_to_address(log.topics[1])
        ids, amounts = decode_log_data(PROMOTION_EVENT_DATA_TYPES, log.data)
        promotions = []
        for i, token_id in enumerate(ids):
            share_amount = _at(amounts, i)
            wallet_share_delta = share_amount if account == wallet else 0
            if wallet_share_delta == 0:
                continue
            promotions.append(DecodedPromotionEvent(
                source_contract=source,
                token_key=TokenKey.of(player_token, token_id),
                account=account,
                share_amount=share_amount,
                wallet_share_delta=wallet_share_delta,
                log_index=log.log_index,
            ))
        out.promotions.extend(promotions)

    @staticmethod
    def _indexed_parties(log: ReceiptLog):
        if len(log.topics) < 3:
            raise DecodeError(f'Expected 3 topics, got {len(log.topics)}')
        return topic_to_address(log.topics[1]), topic_to_address(log.topics[2])


def receipt_currency_delta(
    receipt: TxReceipt,
    wallet_address: str,
    token_address: str = BASE_USDC,
) -> Optional[int]:
    """
    Wallet's net stablecoin delta from the receipt's ERC-20 Transfer logs.

    Returns None when the receipt has no Transfer log of that token, so the
    caller can keep the indexer's figure.
    """
    wallet = normalize_address(wallet_address)
    token = normalize_address(token_address)
    found = False
    delta = 0

    for log in receipt.logs:
        if normalize_address(log.address) != token or log.topic0 != TOPIC_ERC20_TRANSFER:
            continue
        if len(log.topics) < 3:
            continue
        try:
            sender = topic_to_address(log.topics[1])
            receiver = topic_to_address(log.topics[2])
            value = parse_int(log.data)
        except (DecodeError, ParseError) as e:
            logger.debug(f'Skipping malformed Transfer log in {receipt.transaction_hash}: {e}')
            continue
        found = True
        if receiver == wallet:
            delta += value
        if sender == wallet:
            delta -= value

    return delta if found else None
