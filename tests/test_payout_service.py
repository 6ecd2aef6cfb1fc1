"""提现 / 退款测试：预扣余额、钱包失败补偿、出账交易推进。"""

import os
import sqlite3
import tempfile
from unittest.mock import MagicMock

import pytest

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="payout_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import app.database as _db_mod
from app.database import get_db, init_db
from app.models.schemas import OrderStatus, Transaction, TransactionType
from app.services.errors import (
    ConflictError,
    InsufficientBalance,
    ValidationError,
    WalletUnavailable,
)
from app.services.height_tracker import HeightTracker
from app.services.merchant_service import MerchantService, debit_balance
from app.services.order_service import OrderService
from app.services.payout_service import PayoutService
from app.services.platform_config import save_fee_schedule, set_setting
from app.services.status_engine import StatusEngine
from app.services.transaction_service import TransactionService


@pytest.fixture(autouse=True)
def _setup_db():
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS callback_logs;
        DROP TABLE IF EXISTS transactions;
        DROP TABLE IF EXISTS orders;
        DROP TABLE IF EXISTS current_height;
        DROP TABLE IF EXISTS merchants;
        DROP TABLE IF EXISTS system_config;
    """)
    conn.close()
    init_db()
    save_fee_schedule({"share_bps": 0, "transfer_fee": 0})
    set_setting("minimal_payout", 0)
    yield


@pytest.fixture
def wallet():
    wallet = MagicMock()
    wallet.send_slate.return_value = "out-slate"
    return wallet


@pytest.fixture
def svc(wallet):
    return PayoutService(wallet)


@pytest.fixture
def tracker():
    return HeightTracker()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def engine(tracker, notifier):
    return StatusEngine(tracker, notifier)


@pytest.fixture
def merchant():
    svc = MerchantService()
    merchant = svc.create_merchant("shop@example.com", "secret", wallet_url="http://wallet.shop")
    return merchant


def _set_balance(merchant_id, amount):
    db = get_db()
    try:
        db.execute("UPDATE merchants SET balance = ? WHERE id = ?", (amount, merchant_id))
        db.commit()
    finally:
        db.close()


def _balance(merchant_id):
    return MerchantService().get_merchant(merchant_id).balance


def _status(order_id):
    return OrderService().get_order(order_id).status


# ── 提现 ──────────────────────────────────────────────────


class TestPayout:

    def test_insufficient_balance(self, svc, wallet, merchant):
        _set_balance(merchant.id, 1000)
        with pytest.raises(InsufficientBalance):
            svc.initiate_payout(merchant.id, 1500)
        assert _balance(merchant.id) == 1000
        wallet.send_slate.assert_not_called()

    def test_payout_debits_and_saves_transaction(self, svc, wallet, merchant):
        _set_balance(merchant.id, 1000)
        tx = svc.initiate_payout(merchant.id, 500)

        assert _balance(merchant.id) == 500
        assert tx.slate_id == "out-slate"
        assert tx.status == OrderStatus.INITIALIZED
        assert tx.transaction_type == TransactionType.PAYOUT
        assert tx.debited_amount == 500
        assert tx.confirmations_required == 10
        wallet.send_slate.assert_called_once()
        assert wallet.send_slate.call_args[0][:2] == ("http://wallet.shop", 500)

        order = OrderService().get_order(tx.order_id)
        assert order.order_type == TransactionType.PAYOUT
        assert order.status == OrderStatus.INITIALIZED
        assert order.wallet_tx_slate_id == "out-slate"

    def test_fees_deducted_from_sent_amount(self, svc, wallet, merchant):
        save_fee_schedule({"share_bps": 100, "transfer_fee": 8_000_000})
        _set_balance(merchant.id, 2_000_000_000)
        tx = svc.initiate_payout(merchant.id, 1_000_000_000)

        assert tx.platform_fee == 10_000_000
        assert tx.transfer_fee == 8_000_000
        assert tx.amount == 982_000_000
        assert _balance(merchant.id) == 1_000_000_000

    def test_below_minimal_payout(self, svc, merchant):
        set_setting("minimal_payout", 600)
        _set_balance(merchant.id, 1000)
        with pytest.raises(ValidationError):
            svc.initiate_payout(merchant.id, 500)
        assert _balance(merchant.id) == 1000

    def test_fees_exceed_amount(self, svc, merchant):
        save_fee_schedule({"share_bps": 0, "transfer_fee": 500})
        _set_balance(merchant.id, 1000)
        with pytest.raises(ValidationError):
            svc.initiate_payout(merchant.id, 500)

    def test_merchant_without_wallet(self, svc):
        merchant = MerchantService().create_merchant("nowallet@example.com", "secret")
        with pytest.raises(ValidationError):
            svc.initiate_payout(merchant.id, 1)

    def test_wallet_failure_restores_balance(self, svc, wallet, merchant):
        _set_balance(merchant.id, 1000)
        wallet.send_slate.side_effect = WalletUnavailable("钱包不可用")

        with pytest.raises(WalletUnavailable):
            svc.initiate_payout(merchant.id, 500)

        assert _balance(merchant.id) == 1000
        orders = OrderService().list_orders(merchant.id)
        assert len(orders) == 1
        assert orders[0].status == OrderStatus.REJECTED
        assert orders[0].reported is True

    def test_payout_confirms_through_engine(self, svc, engine, tracker, notifier, merchant):
        _set_balance(merchant.id, 1000)
        tx = svc.initiate_payout(merchant.id, 500)
        TransactionService().record_chain_info(tx.slate_id, height=100)

        tracker.update(105)
        assert engine.evaluate(tx.slate_id) == OrderStatus.IN_CHAIN
        assert _status(tx.order_id) == OrderStatus.IN_CHAIN

        tracker.update(109)
        assert engine.evaluate(tx.slate_id) == OrderStatus.CONFIRMED
        assert _status(tx.order_id) == OrderStatus.CONFIRMED
        notifier.notify.assert_called_once_with(tx.order_id)
        assert _balance(merchant.id) == 500

    def test_rejected_payout_returns_funds(self, svc, engine, merchant):
        _set_balance(merchant.id, 1000)
        tx = svc.initiate_payout(merchant.id, 500)
        assert engine.transition(tx, OrderStatus.REJECTED)
        assert _balance(merchant.id) == 1000
        assert _status(tx.order_id) == OrderStatus.REJECTED

    def test_concurrent_payouts_never_overdraw(self, svc, merchant):
        _set_balance(merchant.id, 1000)
        svc.initiate_payout(merchant.id, 600)
        with pytest.raises(InsufficientBalance):
            svc.initiate_payout(merchant.id, 600)
        assert _balance(merchant.id) == 400


# ── 退款 ──────────────────────────────────────────────────


def _paid_order(engine, tracker, merchant, confirmations, amount=1000):
    """创建收款订单并推进到上链；confirmations 为 1 时直接确认。"""
    order = OrderService().create_order({
        "merchant_id": merchant.id,
        "external_id": "E-1",
        "amount": {"amount": amount, "currency": "GRIN"},
        "confirmations": confirmations,
    })
    tx = Transaction(
        slate_id="pay-slate", order_id=order.id, status=OrderStatus.PENDING,
        amount=amount, confirmations_required=confirmations,
    )
    engine.start_payment(order, tx)
    TransactionService().record_chain_info(tx.slate_id, height=10)
    tracker.update(10)
    engine.evaluate(tx.slate_id)
    return OrderService().get_order(order.id)


class TestRefund:

    def test_refund_confirmed_order_debits_merchant(self, svc, wallet, engine, tracker, merchant):
        order = _paid_order(engine, tracker, merchant, confirmations=1)
        assert order.status == OrderStatus.CONFIRMED
        assert _balance(merchant.id) == 1000

        tx = svc.initiate_refund(order.id, "http://buyer.wallet")

        assert _status(order.id) == OrderStatus.REFUND
        assert _balance(merchant.id) == 0
        assert tx.transaction_type == TransactionType.REFUND
        assert tx.status == OrderStatus.INITIALIZED
        assert tx.debited_amount == 1000
        assert wallet.send_slate.call_args[0][:2] == ("http://buyer.wallet", 1000)

    def test_refund_in_chain_order_does_not_debit(self, svc, engine, tracker, merchant):
        order = _paid_order(engine, tracker, merchant, confirmations=5)
        assert order.status == OrderStatus.IN_CHAIN

        tx = svc.initiate_refund(order.id, "http://buyer.wallet")

        assert _status(order.id) == OrderStatus.REFUND
        assert tx.debited_amount == 0
        assert _balance(merchant.id) == 0

        # 退款后原收款交易确认也不再入账
        tracker.update(20)
        engine.evaluate("pay-slate")
        assert _balance(merchant.id) == 0

    def test_refund_sent_amount_excludes_fees(self, svc, wallet, engine, tracker, merchant):
        save_fee_schedule({"share_bps": 100, "transfer_fee": 8_000_000})
        order = _paid_order(engine, tracker, merchant, confirmations=5, amount=1_000_000_000)
        db = get_db()
        try:
            db.execute("UPDATE transactions SET platform_fee = 10000000 WHERE slate_id = 'pay-slate'")
            db.commit()
        finally:
            db.close()

        tx = svc.initiate_refund(order.id, "http://buyer.wallet")
        assert tx.amount == 982_000_000
        assert tx.platform_fee == 0

    def test_refund_new_order_rejected(self, svc, wallet, merchant):
        order = OrderService().create_order({
            "merchant_id": merchant.id,
            "external_id": "E-1",
            "amount": {"amount": 1000, "currency": "GRIN"},
        })
        with pytest.raises(ValidationError):
            svc.initiate_refund(order.id, "http://buyer.wallet")
        wallet.send_slate.assert_not_called()

    def test_missing_destination(self, svc, engine, tracker, merchant):
        order = _paid_order(engine, tracker, merchant, confirmations=1)
        with pytest.raises(ValidationError):
            svc.initiate_refund(order.id, "")

    def test_duplicate_refund(self, svc, wallet, engine, tracker, merchant):
        order = _paid_order(engine, tracker, merchant, confirmations=1)
        svc.initiate_refund(order.id, "http://buyer.wallet")
        wallet.send_slate.return_value = "out-slate-2"
        with pytest.raises(ConflictError):
            svc.initiate_refund(order.id, "http://buyer.wallet")
        assert wallet.send_slate.call_count == 1

    def test_wallet_failure_reverts_refund(self, svc, wallet, engine, tracker, merchant):
        order = _paid_order(engine, tracker, merchant, confirmations=1)
        wallet.send_slate.side_effect = WalletUnavailable("钱包不可用")

        with pytest.raises(WalletUnavailable):
            svc.initiate_refund(order.id, "http://buyer.wallet")

        assert _status(order.id) == OrderStatus.CONFIRMED
        assert _balance(merchant.id) == 1000

    def test_merchant_already_withdrew(self, svc, wallet, engine, tracker, merchant):
        order = _paid_order(engine, tracker, merchant, confirmations=1)
        db = get_db()
        try:
            debit_balance(db, merchant.id, 600)
            db.commit()
        finally:
            db.close()

        with pytest.raises(InsufficientBalance):
            svc.initiate_refund(order.id, "http://buyer.wallet")
        assert _status(order.id) == OrderStatus.CONFIRMED
        assert _balance(merchant.id) == 400
        wallet.send_slate.assert_not_called()

    def test_rejected_refund_returns_debit(self, svc, engine, tracker, merchant):
        order = _paid_order(engine, tracker, merchant, confirmations=1)
        tx = svc.initiate_refund(order.id, "http://buyer.wallet")

        assert engine.transition(tx, OrderStatus.REJECTED)
        assert _balance(merchant.id) == 1000
        assert _status(order.id) == OrderStatus.REFUND

    def test_late_payment_refund_without_debit(self, svc, wallet, engine, tracker, merchant):
        order = OrderService().create_order({
            "merchant_id": merchant.id,
            "external_id": "E-1",
            "amount": {"amount": 1000, "currency": "GRIN"},
        })
        tx = Transaction(slate_id="pay-slate", order_id=order.id, status=OrderStatus.PENDING, amount=1000)
        engine.start_payment(order, tx)
        engine.transition(TransactionService().get("pay-slate"), OrderStatus.REJECTED)
        TransactionService().record_chain_info("pay-slate", height=10)
        tracker.update(10)
        assert engine.evaluate("pay-slate") == OrderStatus.REFUND

        refund = svc.initiate_refund(order.id, "http://buyer.wallet")
        assert refund.debited_amount == 0
        assert _balance(merchant.id) == 0
        assert _status(order.id) == OrderStatus.REFUND

