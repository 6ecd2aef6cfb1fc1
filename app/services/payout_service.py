"""
提现 / 退款服务：发起出账交易，预扣商户余额，钱包失败时补偿。

- 提现：扣减余额 + 创建提现订单（同一事务）→ 钱包付款 → 保存 Initialized 交易
- 退款：订单 InChain / Confirmed → Refund（已确认的订单同时扣回商户入账）
  → 钱包付款 → 保存 Initialized 退款交易
- 钱包付款失败：退回预扣余额，订单恢复原状态，异常抛给调用方

出账交易之后与收款交易一样由状态机推进（Initialized → Pending → InChain → Confirmed），
被拒绝时状态机退回 debited_amount。
"""

import logging
import uuid
from datetime import datetime

from app.database import get_db
from app.models.schemas import (
    Currency,
    Money,
    Order,
    OrderStatus,
    Transaction,
    TransactionType,
    format_time,
)
from app.services.errors import ConflictError, ValidationError, WalletUnavailable
from app.services.fee_calculator import FeeSchedule, calculate_fees
from app.services.merchant_service import MerchantService, credit_balance, debit_balance
from app.services.order_service import OrderService
from app.services.platform_config import get_fee_schedule, get_setting
from app.services.transaction_service import TransactionService
from app.services.wallet_client import WalletClient

logger = logging.getLogger(__name__)

REFUNDABLE_STATUSES = (OrderStatus.IN_CHAIN, OrderStatus.CONFIRMED)

# 退款抢占订单状态的最大尝试次数（与对账并发推进 InChain → Confirmed 竞争）
REFUND_CLAIM_ATTEMPTS = 3


class PayoutService:
    """提现 / 退款服务。"""

    def __init__(self, wallet: WalletClient):
        self.wallet = wallet
        self.merchants = MerchantService()
        self.orders = OrderService()
        self.transactions = TransactionService()

    # ── 提现 ──────────────────────────────────────────────

    def initiate_payout(self, merchant_id: str, amount: int) -> Transaction:
        """
        发起商户提现。

        Returns:
            Initialized 状态的提现交易。

        Raises:
            NotFoundError: 商户不存在。
            ValidationError: 金额低于最小提现额、扣费后不足或商户未配置钱包地址。
            InsufficientBalance: 余额不足，余额不变。
            WalletUnavailable: 钱包付款失败，余额已退回。
        """
        merchant = self.merchants.get_merchant(merchant_id)
        if not merchant.wallet_url:
            raise ValidationError("商户未配置钱包地址")

        amount = int(amount)
        minimal = get_setting("minimal_payout")
        if amount <= 0 or amount < minimal:
            raise ValidationError(f"提现金额不能低于 {minimal}")

        fees = calculate_fees(
            amount, TransactionType.PAYOUT, FeeSchedule.from_dict(get_fee_schedule())
        )
        send_amount = amount - fees.platform_fee - fees.transfer_fee
        if send_amount <= 0:
            raise ValidationError("提现金额不足以支付手续费")

        order_id = str(uuid.uuid4())
        now = format_time(datetime.now())
        db = get_db()
        try:
            debit_balance(db, merchant_id, amount)
            db.execute(
                """INSERT INTO orders
                   (id, external_id, merchant_id, order_type, grin_amount, amount,
                    status, confirmations, message, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    order_id, f"payout-{uuid.uuid4().hex}", merchant_id,
                    TransactionType.PAYOUT.value, amount,
                    Money(amount, Currency.GRIN).to_json(),
                    OrderStatus.INITIALIZED.code,
                    get_setting("payout_confirmations"), "payout", now, now,
                ),
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "提现已扣款: merchant_id=%s, order_id=%s, amount=%d",
            merchant_id, order_id, amount,
        )

        try:
            slate_id = self.wallet.send_slate(
                merchant.wallet_url, send_amount, f"payout {order_id}"
            )
        except WalletUnavailable:
            self._compensate_payout(merchant_id, order_id, amount)
            raise

        tx = Transaction(
            slate_id=slate_id,
            order_id=order_id,
            status=OrderStatus.INITIALIZED,
            transaction_type=TransactionType.PAYOUT,
            amount=send_amount,
            confirmations_required=get_setting("payout_confirmations"),
            platform_fee=fees.platform_fee,
            transfer_fee=fees.transfer_fee,
            debited_amount=amount,
        )
        return self._save_outbound(tx)

    def _compensate_payout(self, merchant_id: str, order_id: str, amount: int) -> None:
        """钱包付款失败：退回余额，提现订单标记为 Rejected（不通知商户，错误已同步返回）。"""
        now = format_time(datetime.now())
        db = get_db()
        try:
            credit_balance(db, merchant_id, amount)
            db.execute(
                """UPDATE orders
                   SET status = ?, updated_at = ?, reported = 1, callback_status = 1
                   WHERE id = ? AND status = ?""",
                (
                    OrderStatus.REJECTED.code, now, order_id,
                    OrderStatus.INITIALIZED.code,
                ),
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.warning(
            "钱包付款失败，提现已退回: merchant_id=%s, order_id=%s, amount=%d",
            merchant_id, order_id, amount,
        )

    # ── 退款 ──────────────────────────────────────────────

    def initiate_refund(self, order_id: str, destination: str) -> Transaction:
        """
        为收款订单发起退款。

        订单必须是 InChain / Confirmed；已确认订单扣回商户入账的净额。
        到账晚于拒绝而进入 Refund 的订单（尚无退款交易）也可以发起，商户未入账不扣款。

        Returns:
            Initialized 状态的退款交易。

        Raises:
            NotFoundError: 订单不存在。
            ValidationError: 订单状态不可退款、缺少目标地址或金额不足以支付转账费。
            ConflictError: 已有进行中的退款，或订单状态并发变化。
            InsufficientBalance: 商户余额不足以扣回入账。
            WalletUnavailable: 钱包付款失败，余额和订单状态已恢复。
        """
        if not destination:
            raise ValidationError("缺少退款地址")

        order = self.orders.get_order(order_id)
        if order.order_type != TransactionType.PAYMENT:
            raise ValidationError("只有收款订单可以退款")

        if self.transactions.has_open_outbound(order_id, TransactionType.REFUND):
            raise ConflictError(f"订单 {order_id} 已有退款交易")
        refunds = [
            t for t in self.transactions.list_for_order(order_id)
            if t.transaction_type == TransactionType.REFUND
        ]

        late_payment = order.status == OrderStatus.REFUND and not refunds
        if order.status not in REFUNDABLE_STATUSES and not late_payment:
            raise ValidationError(f"订单状态为 {order.status.value}，不能退款")

        payment = self._payment_transaction(order_id)
        payment_fee = payment.platform_fee if payment else 0
        fees = calculate_fees(
            order.grin_amount, TransactionType.REFUND,
            FeeSchedule.from_dict(get_fee_schedule()),
        )
        send_amount = order.grin_amount - payment_fee - fees.transfer_fee
        if send_amount <= 0:
            raise ValidationError("退款金额不足以支付转账费")

        if late_payment:
            previous, debited = OrderStatus.REFUND, 0
        else:
            previous, debited = self._claim_refund(order, order.grin_amount - payment_fee)

        try:
            slate_id = self.wallet.send_slate(
                destination, send_amount, f"refund {order.external_id}"
            )
        except WalletUnavailable:
            self._compensate_refund(order, previous, debited)
            raise

        tx = Transaction(
            slate_id=slate_id,
            order_id=order_id,
            status=OrderStatus.INITIALIZED,
            transaction_type=TransactionType.REFUND,
            amount=send_amount,
            confirmations_required=get_setting("payout_confirmations"),
            platform_fee=fees.platform_fee,
            transfer_fee=fees.transfer_fee,
            debited_amount=debited,
        )
        saved = self._save_outbound(tx)
        logger.info(
            "退款已发起: order_id=%s, slate_id=%s, amount=%d, debited=%d",
            order_id, slate_id, send_amount, debited,
        )
        return saved

    def _payment_transaction(self, order_id: str) -> Transaction | None:
        for tx in self.transactions.list_for_order(order_id):
            if tx.transaction_type == TransactionType.PAYMENT and tx.height is not None:
                return tx
        return None

    def _claim_refund(self, order: Order, credited: int) -> tuple[OrderStatus, int]:
        """
        条件更新订单为 Refund；订单已确认时在同一事务内扣回商户入账。

        Returns:
            (订单原状态, 扣回金额)
        """
        for _ in range(REFUND_CLAIM_ATTEMPTS):
            if order.status not in REFUNDABLE_STATUSES:
                raise ValidationError(f"订单状态为 {order.status.value}，不能退款")

            previous = order.status
            debited = credited if previous == OrderStatus.CONFIRMED else 0
            now = format_time(datetime.now())
            db = get_db()
            try:
                cursor = db.execute(
                    """UPDATE orders SET status = ?, updated_at = ?
                       WHERE id = ? AND status = ?""",
                    (OrderStatus.REFUND.code, now, order.id, previous.code),
                )
                if cursor.rowcount == 1:
                    if debited:
                        debit_balance(db, order.merchant_id, debited)
                    db.commit()
                    logger.info(
                        "订单状态迁移: order_id=%s, %s -> refund",
                        order.id, previous.value,
                    )
                    return previous, debited
                db.rollback()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

            order = self.orders.get_order(order.id)

        raise ConflictError(f"订单 {order.id} 状态并发变化，退款未发起")

    def _compensate_refund(self, order: Order, previous: OrderStatus, debited: int) -> None:
        """钱包付款失败：退回扣款，订单恢复到退款前状态。"""
        now = format_time(datetime.now())
        db = get_db()
        try:
            if debited:
                credit_balance(db, order.merchant_id, debited)
            if previous != OrderStatus.REFUND:
                db.execute(
                    """UPDATE orders SET status = ?, updated_at = ?
                       WHERE id = ? AND status = ?""",
                    (previous.code, now, order.id, OrderStatus.REFUND.code),
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.warning(
            "钱包付款失败，退款已撤销: order_id=%s, restored=%s, credited=%d",
            order.id, previous.value, debited,
        )

    def _save_outbound(self, tx: Transaction) -> Transaction:
        """保存出账交易并记录到订单。钱包已付款，保存失败需要人工对账。"""
        db = get_db()
        try:
            self.transactions.insert(db, tx)
            db.execute(
                "UPDATE orders SET wallet_tx_slate_id = ? WHERE id = ?",
                (tx.slate_id, tx.order_id),
            )
            db.commit()
        except ConflictError:
            db.rollback()
            logger.error(
                "出账交易保存失败，需要人工对账: slate_id=%s, order_id=%s",
                tx.slate_id, tx.order_id,
            )
            raise
        finally:
            db.close()
        return self.transactions.get(tx.slate_id)
