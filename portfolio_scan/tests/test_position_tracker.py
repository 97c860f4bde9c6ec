import random
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from django.test import SimpleTestCase

from portfolio_scan.calculators.aggregators import RealizedPnLDailyAggregator, RealizedPnLTokenAggregator
from portfolio_scan.calculators.position_tracker import LedgerBuilder, PositionTracker, RealizedPnLEvent
from portfolio_scan.calculators.reconciliation import Reconciler
from portfolio_scan.calculators.types import (
    DecodedPromotionEvent,
    DecodedReceipt,
    DecodedTradeEvent,
    InferredTrade,
    LedgerEntry,
    LedgerEntryKind,
    ReconciledTransferEvent,
    TokenKey,
    TradeDirection,
)
from portfolio_scan.tests.helpers import ONE, OTHER, PAIR_1, PROMO_1, SHARE_1, THIRD, USDC, WALLET, tx

KEY = TokenKey.of(SHARE_1, 1)
KEY_B = TokenKey.of(SHARE_1, 2)
T0 = datetime(2025, 1, 10, 12, tzinfo=timezone.utc)


# -- Test helpers --

def entry(kind, shares, currency=0, seq=0, initiator=WALLET, recipient=WALLET, key=KEY, day=0, tx_hash=None):
    return LedgerEntry(
        kind=kind,
        tx_hash=tx_hash or tx(seq + 1),
        timestamp=T0 + timedelta(days=day, seconds=seq),
        token_key=key,
        wallet_share_delta=shares,
        wallet_currency_delta=currency,
        block_number=100 + seq,
        sequence=seq,
        initiator=initiator,
        recipient=recipient,
    )


def buy(shares, paid, seq=0, **kwargs):
    return entry(LedgerEntryKind.TRADE, shares, -paid, seq, **kwargs)


def sell(shares, received, seq=0, **kwargs):
    return entry(LedgerEntryKind.TRADE, -shares, received, seq, **kwargs)


def replay(*entries):
    return PositionTracker().replay(list(entries), WALLET)


# -- Tests: moving average cost basis --

class TestMovingAverageCost(SimpleTestCase):

    def test_buy_then_partial_sell(self):
        """Buy 100 for 50 USDC, sell 40 for 22 USDC: realized 2 USDC, 60 shares cost 30 USDC."""
        state = replay(
            buy(100 * ONE, 50 * USDC, seq=0),
            sell(40 * ONE, 22 * USDC, seq=1),
        )
        pos = state.positions[KEY]

        self.assertEqual(pos.shares, 60 * ONE)
        self.assertEqual(pos.cost_basis, 30 * USDC)
        self.assertEqual(pos.realized_pnl, 2 * USDC)
        self.assertEqual(pos.avg_cost, 500000)
        self.assertEqual(state.realized_pnl, 2 * USDC)
        self.assertEqual(len(state.realized_events), 1)
        self.assertEqual(pos.bought_shares, 100 * ONE)
        self.assertEqual(pos.sold_shares, 40 * ONE)
        self.assertEqual(pos.spent, 50 * USDC)
        self.assertEqual(pos.received, 22 * USDC)

    def test_full_exit_leaves_no_cost_dust(self):
        """Selling every held share removes all cost, whatever the rounding."""
        state = replay(
            buy(3 * ONE, 10 * USDC, seq=0),
            sell(1 * ONE, 4 * USDC, seq=1),
            sell(2 * ONE, 7 * USDC, seq=2),
        )
        pos = state.positions[KEY]

        self.assertEqual(pos.shares, 0)
        self.assertEqual(pos.cost_basis, 0)
        self.assertEqual(pos.realized_pnl, 11 * USDC - 10 * USDC)
        self.assertIsNone(pos.avg_cost)

    def test_single_full_exit_removes_whole_cost(self):
        """Average cost on 3 shares for 50 USDC rounds down; a full exit still clears the cost."""
        state = replay(
            buy(3 * ONE, 50 * USDC, seq=0),
            sell(3 * ONE, 60 * USDC, seq=1),
        )
        pos = state.positions[KEY]

        self.assertEqual(pos.cost_basis, 0)
        self.assertEqual(pos.realized_pnl, 10 * USDC)

    def test_promotion_adds_free_shares(self):
        """Free shares lower the average cost; they never add cost."""
        state = replay(
            buy(10 * ONE, 10 * USDC, seq=0),
            entry(LedgerEntryKind.PROMOTION, 10 * ONE, seq=1),
            sell(5 * ONE, 5 * USDC, seq=2),
        )
        pos = state.positions[KEY]

        self.assertEqual(pos.free_shares_in, 10 * ONE)
        self.assertEqual(pos.free_events, 1)
        self.assertEqual(pos.shares, 15 * ONE)
        self.assertEqual(pos.cost_basis, 7500000)
        self.assertEqual(pos.realized_pnl, 2500000)

    def test_reconciled_transfers_are_counted(self):
        state = replay(
            entry(LedgerEntryKind.RECONCILED_TRANSFER, 4 * ONE, seq=0),
            entry(LedgerEntryKind.RECONCILED_TRANSFER, -ONE, seq=1),
        )

        self.assertEqual(state.reconciled_transfer_in_count, 1)
        self.assertEqual(state.reconciled_transfer_out_count, 1)
        self.assertEqual(state.positions[KEY].shares, 3 * ONE)
        self.assertEqual(state.total_cost_basis, 0)

    def test_transfer_out_removes_cost_at_average(self):
        state = replay(
            buy(10 * ONE, 20 * USDC, seq=0),
            entry(LedgerEntryKind.RECONCILED_TRANSFER, -5 * ONE, seq=1),
        )
        pos = state.positions[KEY]

        self.assertEqual(pos.cost_basis, 10 * USDC)
        self.assertEqual(pos.realized_pnl, 0)

    def test_zero_delta_entries_are_skipped(self):
        state = replay(entry(LedgerEntryKind.PROMOTION, 0))
        self.assertEqual(state.positions, {})


class TestUnpaidTrades(SimpleTestCase):

    def test_gift_buy(self):
        """Someone else paid and the wallet received: a gift, shares at zero cost."""
        state = replay(buy(5 * ONE, 0, initiator=OTHER, recipient=WALLET))

        self.assertEqual(state.gift_buy_count, 1)
        self.assertEqual(state.unknown_cost_buy_count, 0)
        self.assertEqual(state.positions[KEY].shares, 5 * ONE)
        self.assertEqual(state.positions[KEY].cost_basis, 0)

    def test_unknown_cost_buy(self):
        """The wallet bought but no payment was visible: unknown cost."""
        state = replay(buy(5 * ONE, 0, initiator=WALLET, recipient=WALLET))

        self.assertEqual(state.gift_buy_count, 0)
        self.assertEqual(state.unknown_cost_buy_count, 1)

    def test_sell_with_redirected_proceeds(self):
        state = replay(
            buy(10 * ONE, 10 * USDC, seq=0),
            sell(4 * ONE, 0, seq=1, recipient=THIRD),
        )
        pos = state.positions[KEY]

        self.assertEqual(state.proceeds_redirected_count, 1)
        self.assertEqual(pos.realized_pnl, 0)
        self.assertEqual(pos.shares, 6 * ONE)
        self.assertEqual(pos.cost_basis, 6 * USDC)
        self.assertEqual(state.realized_events, [])

    def test_oversell_is_flagged(self):
        """Selling more than held: cost only for held shares, position goes negative."""
        state = replay(
            buy(2 * ONE, 2 * USDC, seq=0),
            sell(5 * ONE, 10 * USDC, seq=1),
        )
        pos = state.positions[KEY]

        self.assertEqual(pos.shares, -3 * ONE)
        self.assertEqual(pos.cost_basis, 0)
        self.assertEqual(pos.realized_pnl, 8 * USDC)
        self.assertTrue(pos.negative_shares)
        self.assertEqual(state.negative_position_count, 1)

    def test_replay_is_idempotent(self):
        entries = [
            buy(10 * ONE, 7 * USDC, seq=0),
            entry(LedgerEntryKind.PROMOTION, ONE, seq=1),
            sell(3 * ONE, 4 * USDC, seq=2),
        ]
        tracker = PositionTracker()
        first = tracker.replay(entries, WALLET)
        second = tracker.replay(entries, WALLET)

        self.assertEqual(first.positions, second.positions)
        self.assertEqual(first.realized_pnl, second.realized_pnl)

    def test_wallet_is_per_call(self):
        """The same tracker classifies against whichever wallet each replay names."""
        gift = [buy(5 * ONE, 0, initiator=OTHER, recipient=WALLET)]
        tracker = PositionTracker()

        as_recipient = tracker.replay(gift, WALLET)
        as_initiator = tracker.replay(gift, OTHER)

        self.assertEqual(as_recipient.gift_buy_count, 1)
        self.assertEqual(as_initiator.gift_buy_count, 0)
        self.assertEqual(as_initiator.unknown_cost_buy_count, 1)
        self.assertEqual(vars(tracker), {})


# -- Tests: ledger building --

class TestLedgerBuilder(SimpleTestCase):

    def test_ordering_by_time_then_log_index_then_synthetic(self):
        trade = DecodedTradeEvent(
            direction=TradeDirection.BUY, pair_contract=PAIR_1, token_key=KEY,
            share_amount=ONE, currency_amount=USDC, fee_amount=0,
            initiator=WALLET, recipient=WALLET, wallet_share_delta=ONE,
            wallet_currency_delta=-USDC, log_index=5,
        )
        promo = DecodedPromotionEvent(
            source_contract=PROMO_1, token_key=KEY, account=WALLET,
            share_amount=ONE, wallet_share_delta=ONE, log_index=2,
        )
        decoded = {tx(2): DecodedReceipt(trades=[trade], promotions=[promo])}
        reconciled = {tx(2): [ReconciledTransferEvent(KEY, 'in', ONE)]}
        inferred = {tx(1): InferredTrade('buy', KEY_B, ONE, -USDC)}
        timestamps = {tx(1): T0, tx(2): T0 + timedelta(hours=1)}
        blocks = {tx(1): 100, tx(2): 101}

        ledger = LedgerBuilder().build([tx(2), tx(1)], decoded, reconciled, inferred, timestamps, blocks)

        self.assertEqual(
            [e.kind for e in ledger],
            [
                LedgerEntryKind.INFERRED_TRADE,
                LedgerEntryKind.PROMOTION,
                LedgerEntryKind.TRADE,
                LedgerEntryKind.RECONCILED_TRANSFER,
            ],
        )

    def test_same_block_transactions_replay_in_chain_order(self):
        """An unexplained transfer between a buy and a sell in one block lowers the sell's cost."""
        bought = DecodedTradeEvent(
            direction=TradeDirection.BUY, pair_contract=PAIR_1, token_key=KEY,
            share_amount=10 * ONE, currency_amount=100 * USDC, fee_amount=0,
            initiator=WALLET, recipient=WALLET, wallet_share_delta=10 * ONE,
            wallet_currency_delta=-100 * USDC, log_index=1,
        )
        sold = DecodedTradeEvent(
            direction=TradeDirection.SELL, pair_contract=PAIR_1, token_key=KEY,
            share_amount=10 * ONE, currency_amount=100 * USDC, fee_amount=0,
            initiator=WALLET, recipient=WALLET, wallet_share_delta=-10 * ONE,
            wallet_currency_delta=100 * USDC, log_index=9,
        )
        decoded = {tx(1): DecodedReceipt(trades=[bought]), tx(3): DecodedReceipt(trades=[sold])}
        reconciled = {tx(2): [ReconciledTransferEvent(KEY, 'in', 10 * ONE)]}
        hashes = [tx(1), tx(2), tx(3)]
        timestamps = {h: T0 for h in hashes}
        blocks = {h: 100 for h in hashes}

        ledger = LedgerBuilder().build(hashes, decoded, reconciled, {}, timestamps, blocks)
        state = PositionTracker().replay(ledger, WALLET)

        self.assertEqual([e.tx_hash for e in ledger], hashes)
        self.assertEqual([e.tx_position for e in ledger], [0, 1, 2])
        self.assertEqual(state.realized_pnl, 50 * USDC)
        self.assertEqual(state.positions[KEY].shares, 10 * ONE)
        self.assertEqual(state.positions[KEY].cost_basis, 50 * USDC)

    def test_decoded_tx_ignores_inferred_trade(self):
        decoded = {tx(1): DecodedReceipt()}
        inferred = {tx(1): InferredTrade('buy', KEY, ONE, -USDC)}
        ledger = LedgerBuilder().build([tx(1)], decoded, {}, inferred)

        self.assertEqual(ledger, [])

    def test_unknown_inferred_trade_is_not_an_entry(self):
        inferred = {tx(1): InferredTrade('unknown', KEY, ONE, 0)}
        ledger = LedgerBuilder().build([tx(1)], {}, {}, inferred)

        self.assertEqual(ledger, [])


class TestLedgerConservation(SimpleTestCase):
    """Replayed shares equal the raw on-chain sum, whatever the decoder explained."""

    def test_random_histories(self):
        rng = random.Random(1155)
        keys = [TokenKey.of(SHARE_1, i) for i in range(1, 4)]

        for _ in range(25):
            raw_by_tx, decoded_by_tx, inferred_by_tx, timestamps = {}, {}, {}, {}
            hashes = []
            for n in range(rng.randint(1, 12)):
                tx_hash = tx(n + 1)
                hashes.append(tx_hash)
                timestamps[tx_hash] = T0 + timedelta(minutes=n)
                deltas = {k: rng.randint(-5, 9) * ONE for k in rng.sample(keys, rng.randint(1, 2))}
                deltas = {k: v for k, v in deltas.items() if v}
                if not deltas:
                    continue
                raw_by_tx[tx_hash] = deltas

                choice = rng.random()
                if choice < 0.4:
                    trades = []
                    for key, delta in deltas.items():
                        # Decoded amounts deliberately disagree sometimes.
                        amount = delta + rng.choice([0, 0, ONE, -ONE])
                        if amount == 0:
                            continue
                        direction = TradeDirection.BUY if amount > 0 else TradeDirection.SELL
                        trades.append(DecodedTradeEvent(
                            direction=direction, pair_contract=PAIR_1, token_key=key,
                            share_amount=abs(amount), currency_amount=USDC, fee_amount=0,
                            initiator=WALLET, recipient=WALLET, wallet_share_delta=amount,
                            wallet_currency_delta=-USDC if amount > 0 else USDC,
                        ))
                    decoded_by_tx[tx_hash] = DecodedReceipt(trades=trades)
                elif choice < 0.7 and len(deltas) == 1:
                    (key, delta), = deltas.items()
                    kind = 'buy' if delta > 0 else 'sell'
                    inferred_by_tx[tx_hash] = InferredTrade(kind, key, delta, -USDC if delta > 0 else USDC)

            reconciliation = Reconciler().reconcile(hashes, raw_by_tx, decoded_by_tx, inferred_by_tx)
            ledger = LedgerBuilder().build(
                hashes, decoded_by_tx, reconciliation.transfers_by_tx, inferred_by_tx, timestamps,
            )
            state = PositionTracker().replay(ledger, WALLET)

            expected = defaultdict(int)
            for deltas in raw_by_tx.values():
                for key, delta in deltas.items():
                    expected[key] += delta
            for key in keys:
                pos = state.positions.get(key)
                self.assertEqual(pos.shares if pos else 0, expected[key])
                if pos is not None:
                    self.assertGreaterEqual(pos.cost_basis, 0)


# -- Tests: realized PnL aggregation --

class TestRealizedPnLAggregators(SimpleTestCase):

    def test_by_token_sorted_by_absolute_pnl(self):
        events = [
            RealizedPnLEvent(T0, tx(1), KEY, 5 * USDC),
            RealizedPnLEvent(T0, tx(2), KEY_B, -9 * USDC),
            RealizedPnLEvent(T0, tx(3), KEY, USDC),
        ]
        rows = RealizedPnLTokenAggregator().aggregate(events)

        self.assertEqual([r['token_id_dec'] for r in rows], ['2', '1'])
        self.assertEqual(rows[1]['realized_pnl_usdc_raw'], str(6 * USDC))
        self.assertEqual(rows[1]['sell_count'], 2)

    def test_daily_cumulative(self):
        events = [
            RealizedPnLEvent(T0 + timedelta(days=1), tx(1), KEY, -USDC),
            RealizedPnLEvent(T0, tx(2), KEY, 3 * USDC),
            RealizedPnLEvent(T0, tx(3), KEY_B, USDC),
            RealizedPnLEvent(None, tx(4), KEY, 100 * USDC),
        ]
        rows = RealizedPnLDailyAggregator().aggregate(events)

        self.assertEqual(rows, [
            {'date': '2025-01-10', 'daily_pnl_usdc_raw': str(4 * USDC), 'cumulative_pnl_usdc_raw': str(4 * USDC)},
            {'date': '2025-01-11', 'daily_pnl_usdc_raw': str(-USDC), 'cumulative_pnl_usdc_raw': str(3 * USDC)},
        ])
