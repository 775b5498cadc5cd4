"""Tests for simulated receipts and their lifecycle."""

import random
from decimal import Decimal

import pytest

from autoflow_core.ledger import EntryKind
from autoflow_core.receipt import (
    BLOCK_NUMBER_MIN,
    BLOCK_NUMBER_SPAN,
    CONFIRMATIONS_SETTLED,
    GAS_USED_MIN,
    STATUS_ORDER,
    ReceiptGenerator,
    ReceiptStatus,
    short_address,
)


@pytest.fixture
def gen():
    return ReceiptGenerator(random.Random(99))


class TestCreate:
    def test_fresh_receipt_is_pending(self, gen):
        r = gen.create(EntryKind.DEPOSIT)
        assert r.status is ReceiptStatus.PENDING
        assert r.confirmations == 0
        assert r.block_number is None

    def test_hash_and_address_shapes(self, gen):
        r = gen.create(EntryKind.DEPOSIT)
        assert r.tx_hash.startswith("0x") and len(r.tx_hash) == 66
        assert len(r.from_address) == 42
        assert len(r.to_address) == 42
        int(r.tx_hash, 16)

    def test_spend_settles_on_polygon(self, gen):
        r = gen.create(EntryKind.SPEND)
        assert r.network == "Polygon"
        assert r.currency == "MATIC"
        assert r.explorer_url.startswith("https://polygonscan.com/tx/0x")

    @pytest.mark.parametrize("kind", [
        EntryKind.DEPOSIT, EntryKind.TRANSFER_TO_CARD, EntryKind.YIELD, EntryKind.TOPUP,
    ])
    def test_other_kinds_settle_on_ethereum(self, gen, kind):
        r = gen.create(kind)
        assert r.network == "Ethereum"
        assert r.currency == "ETH"
        assert "etherscan.io" in r.explorer_url

    def test_gas_and_fee(self, gen):
        r = gen.create(EntryKind.DEPOSIT)
        assert GAS_USED_MIN <= r.gas_used < GAS_USED_MIN + 100_000
        assert Decimal("10") <= r.gas_price_gwei < Decimal("30")
        assert r.fee_in_currency == r.gas_used * r.gas_price_gwei / Decimal(10) ** 9

    def test_same_seed_same_receipt(self):
        a = ReceiptGenerator(random.Random(5)).create(EntryKind.YIELD)
        b = ReceiptGenerator(random.Random(5)).create(EntryKind.YIELD)
        assert a == b


class TestHistorical:
    @pytest.mark.parametrize("age, expected", [(0, 2), (2, 6), (5, 12), (30, 12)])
    def test_confirmations_capped(self, gen, age, expected):
        r = gen.create_historical(EntryKind.DEPOSIT, age)
        assert r.status is ReceiptStatus.CONFIRMED
        assert r.confirmations == expected
        assert BLOCK_NUMBER_MIN <= r.block_number < BLOCK_NUMBER_MIN + BLOCK_NUMBER_SPAN


class TestAdvance:
    def test_pending_waits_for_delay(self, gen):
        r = gen.create(EntryKind.DEPOSIT)
        assert gen.advance(r, 14.9) == r

    def test_pending_to_processing(self, gen):
        r = gen.advance(gen.create(EntryKind.DEPOSIT), 15.0)
        assert r.status is ReceiptStatus.PROCESSING
        assert r.confirmations == 1
        assert r.block_number is not None
        assert r.display_status == "Processing"

    def test_confirms_at_six(self, gen):
        r = gen.advance(gen.create(EntryKind.DEPOSIT), 15.0)
        for _ in range(5):
            r = gen.advance(r, 100.0)
        assert r.status is ReceiptStatus.CONFIRMED
        assert r.confirmations == 6
        assert r.display_status == "Confirmed"
        assert not r.is_settled

    def test_monotonic_until_settled(self, gen):
        r = gen.create(EntryKind.SPEND)
        prev = r
        for _ in range(30):
            r = gen.advance(r, 100.0)
            assert r.confirmations >= prev.confirmations
            assert STATUS_ORDER[r.status] >= STATUS_ORDER[prev.status]
            prev = r
        assert r.is_settled
        assert r.confirmations == CONFIRMATIONS_SETTLED
        assert gen.advance(r, 100.0) is r

    def test_block_number_fixed_after_processing(self, gen):
        r = gen.advance(gen.create(EntryKind.DEPOSIT), 15.0)
        block = r.block_number
        for _ in range(10):
            r = gen.advance(r, 100.0)
        assert r.block_number == block


class TestDisplayHelpers:
    def test_short_address(self):
        assert short_address("0x1234567890abcdef1234567890abcdef12345678") == "0x1234...5678"

    def test_short_address_leaves_short_strings(self):
        assert short_address("0x12") == "0x12"

    def test_to_dict(self, gen):
        d = gen.create(EntryKind.DEPOSIT).to_dict()
        assert d["status"] == "pending"
        assert d["display_status"] == "Pending"
        assert d["block_number"] is None
