from django.test import SimpleTestCase

from src.api.exceptions import DecodeError
from src.api.models import ReceiptLog

from portfolio_scan.calculators.event_decoder import (
    ProtocolEventDecoder,
    receipt_currency_delta,
    topic_to_address,
)
from portfolio_scan.calculators.types import TokenKey, TradeDirection
from portfolio_scan.constants import TOPIC_PLAYER_TOKENS_PURCHASE
from portfolio_scan.tests.helpers import (
    ONE,
    OTHER,
    PAIR_1,
    PAIR_2,
    SHARE_1,
    SHARE_2,
    THIRD,
    USDC,
    WALLET,
    address_topic,
    promotion_log,
    purchase_log,
    receipt,
    sale_log,
    tx,
    usdc_log,
)


def decode(*logs):
    return ProtocolEventDecoder().decode_receipt(receipt(tx(1), logs), WALLET)


# -- Tests: trade events --

class TestTradeDecoding(SimpleTestCase):

    def test_batch_purchase_fans_out_per_token(self):
        """One PlayerTokensPurchase with two ids yields two buys."""
        decoded = decode(purchase_log(
            WALLET, WALLET, ids=[1, 2], amounts=[10 * ONE, 4 * ONE],
            currency=[5 * USDC, 2 * USDC], fees=[100, 40], log_index=3,
        ))

        self.assertEqual(len(decoded.trades), 2)
        first, second = decoded.trades
        self.assertEqual(first.direction, TradeDirection.BUY)
        self.assertEqual(first.token_key, TokenKey.of(SHARE_1, 1))
        self.assertEqual(first.wallet_share_delta, 10 * ONE)
        self.assertEqual(first.wallet_currency_delta, -(5 * USDC + 100))
        self.assertEqual(first.log_index, 3)
        self.assertEqual(second.token_key, TokenKey.of(SHARE_1, 2))
        self.assertEqual(second.wallet_currency_delta, -(2 * USDC + 40))
        self.assertEqual(decoded.primary_kind, 'buy')

    def test_prices_ex_and_inc_fee(self):
        decoded = decode(purchase_log(WALLET, WALLET, [1], [2 * ONE], [USDC], fees=[10000]))
        (trade,) = decoded.trades

        self.assertEqual(trade.price_ex_fee, 500000)
        self.assertEqual(trade.price_inc_fee, 505000)

    def test_zero_share_leg_has_no_price(self):
        """A leg with zero shares is not a wallet delta and is not emitted."""
        decoded = decode(purchase_log(WALLET, WALLET, [1, 2], [0, ONE], [USDC, USDC]))

        self.assertEqual([t.token_key.token_id for t in decoded.trades], [2])

    def test_purchase_for_other_recipient_is_dropped(self):
        """The wallet paid but someone else received the shares: no wallet share delta."""
        decoded = decode(purchase_log(WALLET, OTHER, [1], [ONE], [USDC]))

        self.assertEqual(decoded.trades, [])
        self.assertIsNone(decoded.primary_kind)

    def test_gifted_purchase_has_no_currency_delta(self):
        decoded = decode(purchase_log(OTHER, WALLET, [1], [ONE], [USDC]))
        (trade,) = decoded.trades

        self.assertEqual(trade.wallet_share_delta, ONE)
        self.assertEqual(trade.wallet_currency_delta, 0)
        self.assertEqual(trade.initiator, OTHER)
        self.assertEqual(trade.recipient, WALLET)

    def test_sale_with_proceeds_to_wallet(self):
        decoded = decode(sale_log(WALLET, WALLET, [1], [4 * ONE], [3 * USDC], fees=[50], pair=PAIR_2))
        (trade,) = decoded.trades

        self.assertEqual(trade.direction, TradeDirection.SELL)
        self.assertEqual(trade.token_key, TokenKey.of(SHARE_2, 1))
        self.assertEqual(trade.wallet_share_delta, -4 * ONE)
        self.assertEqual(trade.wallet_currency_delta, 3 * USDC)
        self.assertEqual(trade.fee_amount, 50)

    def test_sale_with_proceeds_redirected(self):
        decoded = decode(sale_log(WALLET, THIRD, [1], [ONE], [USDC]))
        (trade,) = decoded.trades

        self.assertEqual(trade.wallet_share_delta, -ONE)
        self.assertEqual(trade.wallet_currency_delta, 0)

    def test_mixed_directions_are_unknown_kind(self):
        decoded = decode(
            purchase_log(WALLET, WALLET, [1], [ONE], [USDC], log_index=0),
            sale_log(WALLET, WALLET, [2], [ONE], [USDC], log_index=1),
        )
        self.assertEqual(decoded.primary_kind, 'unknown')


# -- Tests: promotions and robustness --

class TestPromotionDecoding(SimpleTestCase):

    def test_promotion_to_wallet(self):
        decoded = decode(promotion_log(WALLET, [5, 6], [ONE, 2 * ONE]))

        self.assertEqual(len(decoded.promotions), 2)
        self.assertEqual(decoded.promotions[1].token_key, TokenKey.of(SHARE_1, 6))
        self.assertEqual(decoded.promotions[1].wallet_share_delta, 2 * ONE)
        self.assertEqual(decoded.trades, [])

    def test_promotion_to_other_account_is_dropped(self):
        decoded = decode(promotion_log(OTHER, [5], [ONE]))
        self.assertEqual(decoded.promotions, [])


class TestDecoderRobustness(SimpleTestCase):

    def test_malformed_log_becomes_unknown_and_others_still_decode(self):
        bad = ReceiptLog(
            address=PAIR_1,
            topics=[TOPIC_PLAYER_TOKENS_PURCHASE, address_topic(WALLET), address_topic(WALLET)],
            data='0x1234',
            log_index=0,
        )
        decoded = decode(bad, purchase_log(WALLET, WALLET, [1], [ONE], [USDC], log_index=1))

        self.assertEqual(len(decoded.unknown_logs), 1)
        self.assertEqual(decoded.unknown_logs[0].address, PAIR_1)
        self.assertEqual(len(decoded.trades), 1)

    def test_missing_topics_become_unknown(self):
        bad = ReceiptLog(address=PAIR_1, topics=[TOPIC_PLAYER_TOKENS_PURCHASE], data='0x', log_index=0)
        decoded = decode(bad)

        self.assertEqual(len(decoded.unknown_logs), 1)

    def test_unknown_topic_on_pair_is_ignored(self):
        log = ReceiptLog(address=PAIR_1, topics=['0x' + '11' * 32], data='0x', log_index=0)
        decoded = decode(log)

        self.assertEqual(decoded.to_dict(), {'trades': [], 'promotions': [], 'unknown_logs': []})

    def test_events_from_unlisted_contracts_are_skipped(self):
        decoded = decode(purchase_log(WALLET, WALLET, [1], [ONE], [USDC], pair=THIRD))
        self.assertEqual(decoded.trades, [])

    def test_topic_to_address(self):
        self.assertEqual(topic_to_address(address_topic(WALLET)), WALLET)
        with self.assertRaises(DecodeError):
            topic_to_address('0x1234')


# -- Tests: receipt stablecoin delta --

class TestReceiptCurrencyDelta(SimpleTestCase):

    def test_net_transfer_logs(self):
        r = receipt(tx(1), [
            usdc_log(WALLET, PAIR_1, 5 * USDC),
            usdc_log(PAIR_1, WALLET, USDC),
            usdc_log(OTHER, THIRD, 100 * USDC),
        ])
        self.assertEqual(receipt_currency_delta(r, WALLET), -4 * USDC)

    def test_no_transfer_logs_is_none(self):
        r = receipt(tx(1), [promotion_log(WALLET, [1], [ONE])])
        self.assertIsNone(receipt_currency_delta(r, WALLET))

    def test_unrelated_transfers_count_as_zero(self):
        r = receipt(tx(1), [usdc_log(OTHER, THIRD, USDC)])
        self.assertEqual(receipt_currency_delta(r, WALLET), 0)
