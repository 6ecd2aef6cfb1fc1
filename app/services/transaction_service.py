"""
交易存储：按 slate_id 持久化链上交易，维护承诺（commitment）唯一性。
"""

import json
import logging
import sqlite3
from datetime import datetime

from app.database import get_db
from app.models.schemas import OrderStatus, Transaction, TransactionType, format_time
from app.services.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class TransactionService:
    """交易存储服务。"""

    @staticmethod
    def insert(db: sqlite3.Connection, tx: Transaction) -> None:
        """
        在调用方事务内插入交易，不提交。

        Raises:
            ConflictError: slate_id 或 commitment 已被其他交易占用。
        """
        now = format_time(datetime.now())
        try:
            db.execute(
                """INSERT INTO transactions
                   (slate_id, order_id, transaction_type, status, amount,
                    confirmations_required, platform_fee, transfer_fee,
                    realized_transfer_fee, debited_amount, num_inputs,
                    num_outputs, height, commitment, messages,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    tx.slate_id, tx.order_id, tx.transaction_type.value,
                    tx.status.code, tx.amount, tx.confirmations_required,
                    tx.platform_fee, tx.transfer_fee, tx.realized_transfer_fee,
                    tx.debited_amount, tx.num_inputs, tx.num_outputs,
                    tx.height, tx.commitment, json.dumps(tx.messages),
                    now, now,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                f"交易冲突: slate_id={tx.slate_id}, commitment={tx.commitment}"
            ) from e

    def create(self, tx: Transaction) -> Transaction:
        """独立事务插入交易。"""
        db = get_db()
        try:
            self.insert(db, tx)
            db.commit()
        except ConflictError:
            db.rollback()
            raise
        finally:
            db.close()
        return self.get(tx.slate_id)

    def get(self, slate_id: str) -> Transaction:
        """
        Raises:
            NotFoundError: 交易不存在。
        """
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM transactions WHERE slate_id = ?", (slate_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFoundError(f"交易 {slate_id} 不存在")
        return Transaction.from_row(row)

    def list_for_order(self, order_id: str) -> list[Transaction]:
        db = get_db()
        try:
            rows = db.execute(
                "SELECT * FROM transactions WHERE order_id = ? ORDER BY created_at ASC, rowid ASC",
                (order_id,),
            ).fetchall()
            return [Transaction.from_row(row) for row in rows]
        finally:
            db.close()

    def list_by_status(self, *statuses: OrderStatus) -> list[Transaction]:
        if not statuses:
            return []
        placeholders = ",".join("?" for _ in statuses)
        db = get_db()
        try:
            rows = db.execute(
                f"""SELECT * FROM transactions WHERE status IN ({placeholders})
                    ORDER BY created_at ASC, rowid ASC""",
                [s.code for s in statuses],
            ).fetchall()
            return [Transaction.from_row(row) for row in rows]
        finally:
            db.close()

    def list_open(self) -> list[Transaction]:
        """未终结的交易：需要对账推进的全部交易。"""
        return self.list_by_status(
            OrderStatus.INITIALIZED, OrderStatus.PENDING, OrderStatus.IN_CHAIN
        )

    def has_open_outbound(self, order_id: str, transaction_type: TransactionType) -> bool:
        db = get_db()
        try:
            row = db.execute(
                """SELECT 1 FROM transactions
                   WHERE order_id = ? AND transaction_type = ?
                     AND status IN (?, ?, ?)""",
                (
                    order_id, transaction_type.value,
                    OrderStatus.INITIALIZED.code, OrderStatus.PENDING.code,
                    OrderStatus.IN_CHAIN.code,
                ),
            ).fetchone()
            return row is not None
        finally:
            db.close()

    def record_chain_info(
        self,
        slate_id: str,
        height: int | None = None,
        commitment: str | None = None,
        realized_transfer_fee: int | None = None,
        num_inputs: int | None = None,
        num_outputs: int | None = None,
    ) -> Transaction:
        """
        写入钱包 / 节点回报的链上信息，None 表示不修改。

        承诺一经写入不可更改；与其他交易冲突时抛出 ConflictError，
        现有交易的订单关联不受影响。

        Raises:
            ConflictError: 承诺已属于其他交易，或与本交易已有承诺不一致。
            NotFoundError: 交易不存在。
        """
        tx = self.get(slate_id)
        if commitment is not None and tx.commitment not in (None, commitment):
            raise ConflictError(
                f"交易 {slate_id} 承诺不可更改: {tx.commitment} -> {commitment}"
            )

        now = format_time(datetime.now())
        db = get_db()
        try:
            db.execute(
                """UPDATE transactions
                   SET height = COALESCE(?, height),
                       commitment = COALESCE(commitment, ?),
                       realized_transfer_fee = COALESCE(?, realized_transfer_fee),
                       num_inputs = COALESCE(?, num_inputs),
                       num_outputs = COALESCE(?, num_outputs)
                   WHERE slate_id = ?""",
                (
                    height, commitment, realized_transfer_fee,
                    num_inputs, num_outputs, slate_id,
                ),
            )
            db.commit()
        except sqlite3.IntegrityError as e:
            db.rollback()
            raise ConflictError(f"承诺 {commitment} 已属于其他交易") from e
        finally:
            db.close()

        if height is not None and tx.height not in (None, height):
            logger.warning(
                "交易高度变化: slate_id=%s, %s -> %s", slate_id, tx.height, height
            )
        return self.get(slate_id)
