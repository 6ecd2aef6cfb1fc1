"""
订单 / 交易状态机：根据交易存储和区块高度推进状态。

状态流转：
- 收款：New → Pending → InChain → Confirmed；New / Pending 超时或被取消 → Rejected
- 出账（提现 / 退款）：Initialized → Pending → InChain → Confirmed
- 退款申请：InChain / Confirmed 订单 → Refund
- 已拒绝的收款仍然上链 → Refund（到账晚于拒绝，需要人工退款）

所有写操作均为条件更新（WHERE status = 旧状态），
只有赢得竞争的一方执行余额变更和商户通知，重复对账是无操作。
"""

import json
import logging
from datetime import datetime, timedelta

from app.database import get_db
from app.models.schemas import (
    REPORTABLE_STATUSES,
    Order,
    OrderStatus,
    Transaction,
    TransactionType,
    format_time,
)
from app.services.errors import ConflictError, InvalidTransition
from app.services.height_tracker import HeightTracker
from app.services.merchant_service import credit_balance
from app.services.platform_config import get_setting
from app.services.transaction_service import TransactionService

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    OrderStatus.NEW: {OrderStatus.PENDING, OrderStatus.REJECTED},
    OrderStatus.INITIALIZED: {
        OrderStatus.PENDING, OrderStatus.IN_CHAIN, OrderStatus.REJECTED,
    },
    OrderStatus.PENDING: {OrderStatus.IN_CHAIN, OrderStatus.REJECTED},
    OrderStatus.IN_CHAIN: {OrderStatus.CONFIRMED, OrderStatus.REFUND},
    OrderStatus.CONFIRMED: {OrderStatus.REFUND},
    OrderStatus.REJECTED: {OrderStatus.REFUND},
    OrderStatus.REFUND: set(),
}


def can_transition(old: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[old]


def _order_update_sql(new_status: OrderStatus) -> str:
    """进入需通知状态时，在同一条条件更新里重置通知标记。"""
    if new_status in REPORTABLE_STATUSES:
        return """UPDATE orders
                  SET status = ?, updated_at = ?,
                      reported = 0, report_attempts = 0,
                      next_report_attempt = NULL,
                      callback_status = 0, callback_claimed_at = NULL
                  WHERE id = ? AND status = ?"""
    return """UPDATE orders SET status = ?, updated_at = ?
              WHERE id = ? AND status = ?"""


class StatusEngine:
    """状态机：区块高度由注入的 HeightTracker 提供，通知由注入的回调服务发送。"""

    def __init__(self, tracker: HeightTracker, notifier=None):
        self.tracker = tracker
        self.notifier = notifier
        self.transactions = TransactionService()

    # ── 订单级迁移 ────────────────────────────────────────

    def transition_order(
        self, order_id: str, old: OrderStatus, new: OrderStatus
    ) -> bool:
        """
        仅对订单执行条件状态迁移（无关联交易的情况，如 New 订单过期）。

        Returns:
            True 表示本次调用完成了迁移。
        """
        if not can_transition(old, new):
            raise InvalidTransition(f"非法状态迁移: {old.value} -> {new.value}")

        now = format_time(datetime.now())
        db = get_db()
        try:
            cursor = db.execute(
                _order_update_sql(new), (new.code, now, order_id, old.code)
            )
            db.commit()
            moved = cursor.rowcount == 1
        finally:
            db.close()

        if not moved:
            logger.debug(
                "订单状态已变化，跳过迁移: order_id=%s, %s -> %s",
                order_id, old.value, new.value,
            )
            return False

        logger.info("订单状态迁移: order_id=%s, %s -> %s", order_id, old.value, new.value)
        self._notify(order_id, new)
        return True

    # ── 交易级迁移 ────────────────────────────────────────

    def transition(self, tx: Transaction, new: OrderStatus) -> bool:
        """
        对交易执行条件状态迁移，收款 / 提现交易同步推进其订单。

        在同一个数据库事务内：
        1. 交易条件更新（status = tx.status 才写入），失败说明竞争失败
        2. 订单条件更新（订单仍处于同一旧状态才写入），退款中的订单不受影响
        3. 收款确认时给商户入账（扣除平台费），出账被拒绝时退回预扣余额

        通知在事务提交后发送，不占用数据库事务。

        Returns:
            True 表示本次调用完成了交易迁移。
        """
        old = tx.status
        if not can_transition(old, new):
            raise InvalidTransition(f"非法状态迁移: {old.value} -> {new.value}")

        now = format_time(datetime.now())
        confirmed = new == OrderStatus.CONFIRMED
        order_moved = False

        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE transactions
                   SET status = ?, updated_at = ?,
                       confirmed = CASE WHEN ? THEN 1 ELSE confirmed END,
                       confirmed_at = CASE WHEN ? THEN ? ELSE confirmed_at END
                   WHERE slate_id = ? AND status = ?""",
                (new.code, now, confirmed, confirmed, now, tx.slate_id, old.code),
            )
            if cursor.rowcount == 0:
                db.rollback()
                logger.debug(
                    "交易状态已变化，跳过迁移: slate_id=%s, %s -> %s",
                    tx.slate_id, old.value, new.value,
                )
                return False

            order_row = db.execute(
                "SELECT * FROM orders WHERE id = ?", (tx.order_id,)
            ).fetchone()
            order = Order.from_row(order_row)

            if tx.transaction_type in (TransactionType.PAYMENT, TransactionType.PAYOUT):
                cursor = db.execute(
                    _order_update_sql(new),
                    (new.code, now, order.id, old.code),
                )
                order_moved = cursor.rowcount == 1

            if (
                confirmed
                and order_moved
                and tx.transaction_type == TransactionType.PAYMENT
            ):
                credit_balance(db, order.merchant_id, order.grin_amount - tx.platform_fee)
                logger.info(
                    "收款入账: merchant_id=%s, order_id=%s, amount=%d, platform_fee=%d",
                    order.merchant_id, order.id, order.grin_amount, tx.platform_fee,
                )

            if new == OrderStatus.REJECTED and tx.debited_amount:
                credit_balance(db, order.merchant_id, tx.debited_amount)
                logger.info(
                    "出账失败，退回预扣余额: merchant_id=%s, slate_id=%s, amount=%d",
                    order.merchant_id, tx.slate_id, tx.debited_amount,
                )

            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "交易状态迁移: slate_id=%s, type=%s, %s -> %s",
            tx.slate_id, tx.transaction_type.value, old.value, new.value,
        )
        if order_moved:
            self._notify(order.id, new)
        return True

    def start_payment(self, order: Order, tx: Transaction, slate_messages: list | None = None) -> bool:
        """
        New → Pending：收到钱包 slate，保存收款交易并推进订单（同一事务）。

        Raises:
            ConflictError: 订单已不是 New 状态，或承诺已被其他交易占用。
        """
        now = format_time(datetime.now())
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE orders
                   SET status = ?, updated_at = ?,
                       wallet_tx_slate_id = ?, slate_messages = ?
                   WHERE id = ? AND status = ?""",
                (
                    OrderStatus.PENDING.code, now, tx.slate_id,
                    _dump_messages(slate_messages), order.id,
                    OrderStatus.NEW.code,
                ),
            )
            if cursor.rowcount == 0:
                raise ConflictError(f"订单 {order.id} 已不是 New 状态")
            self.transactions.insert(db, tx)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "订单状态迁移: order_id=%s, new -> pending, slate_id=%s",
            order.id, tx.slate_id,
        )
        return True

    # ── 对账 ──────────────────────────────────────────────

    def evaluate(self, slate_id: str, current_height: int | None = None) -> OrderStatus:
        """
        根据交易高度和当前区块高度推进一笔交易，返回推进后的状态。

        确认数 = current_height - tx.height + 1，达到要求即确认；
        要求为 0 时上链即确认（仍经过 InChain）。重复调用是无操作。
        """
        if current_height is None:
            current_height = self.tracker.read()

        tx = self.transactions.get(slate_id)

        if tx.height is not None and tx.status in (OrderStatus.PENDING, OrderStatus.INITIALIZED):
            self.transition(tx, OrderStatus.IN_CHAIN)
            tx = self.transactions.get(slate_id)

        if (
            tx.status == OrderStatus.IN_CHAIN
            and tx.current_confirmations(current_height) >= tx.confirmations_required
        ):
            self.transition(tx, OrderStatus.CONFIRMED)
            tx = self.transactions.get(slate_id)

        if (
            tx.status == OrderStatus.REJECTED
            and tx.height is not None
            and tx.transaction_type == TransactionType.PAYMENT
        ):
            if self.transition(tx, OrderStatus.REFUND):
                logger.warning(
                    "已拒绝的收款上链，需要退款: slate_id=%s, order_id=%s",
                    tx.slate_id, tx.order_id,
                )
            tx = self.transactions.get(slate_id)

        return tx.status

    # ── 超时 ──────────────────────────────────────────────

    def reject_expired_orders(self, now: datetime | None = None) -> list[str]:
        """
        将超过 expires_at 仍未收到 slate 的 New 收款订单标记为 Rejected。

        Returns:
            本次拒绝的订单 ID 列表。
        """
        now_str = format_time(now or datetime.now())
        db = get_db()
        try:
            rows = db.execute(
                """SELECT id FROM orders
                   WHERE status = ? AND order_type = ?
                     AND expires_at IS NOT NULL AND expires_at < ?""",
                (OrderStatus.NEW.code, TransactionType.PAYMENT.value, now_str),
            ).fetchall()
        finally:
            db.close()

        rejected = []
        for row in rows:
            try:
                if self.transition_order(row["id"], OrderStatus.NEW, OrderStatus.REJECTED):
                    rejected.append(row["id"])
            except Exception as e:
                logger.error("拒绝过期订单异常 (order_id=%s): %s", row["id"], e)
        if rejected:
            logger.info("已拒绝 %d 笔过期订单", len(rejected))
        return rejected

    def expired_transactions(self, now: datetime | None = None) -> list[Transaction]:
        """
        返回已超时但尚未上链的交易：
        - 收款 Pending：变为 Pending 后超过 pending_payment_ttl
        - 出账 Initialized：创建后超过 initialized_payout_ttl
        - 出账 Pending：变为 Pending 后超过 pending_payout_ttl
        """
        now = now or datetime.now()
        pending_payment_ttl = timedelta(seconds=get_setting("pending_payment_ttl"))
        initialized_ttl = timedelta(seconds=get_setting("initialized_payout_ttl"))
        pending_payout_ttl = timedelta(seconds=get_setting("pending_payout_ttl"))

        expired = []
        for tx in self.transactions.list_by_status(OrderStatus.PENDING, OrderStatus.INITIALIZED):
            if tx.height is not None:
                continue
            if tx.status == OrderStatus.INITIALIZED:
                deadline = tx.created_at + initialized_ttl
            elif tx.transaction_type == TransactionType.PAYMENT:
                deadline = tx.updated_at + pending_payment_ttl
            else:
                deadline = tx.updated_at + pending_payout_ttl
            if deadline < now:
                expired.append(tx)
        return expired

    def _notify(self, order_id: str, status: OrderStatus) -> None:
        if self.notifier is None or status not in REPORTABLE_STATUSES:
            return
        try:
            self.notifier.notify(order_id)
        except Exception as e:
            # 通知失败保留 reported=0，由重试任务处理
            logger.warning("商户通知异常 (order_id=%s): %s", order_id, e)


def _dump_messages(messages: list | None) -> str | None:
    return json.dumps(messages) if messages is not None else None
