"""商户管理服务模块。"""

import logging
import secrets
import sqlite3
import uuid
from datetime import datetime

from app.database import get_db
from app.models.schemas import Merchant, format_time, parse_time
from app.services.auth import hash_password, verify_password
from app.services.errors import InsufficientBalance, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class MerchantService:
    """商户管理服务：创建、查询、余额记账。"""

    @staticmethod
    def _generate_token() -> str:
        """生成 32 位随机十六进制令牌。"""
        return secrets.token_hex(16)

    def create_merchant(
        self,
        email: str,
        password: str,
        wallet_url: str | None = None,
        callback_url: str | None = None,
    ) -> Merchant:
        """
        创建商户，分配随机 ID 和 API 令牌，密码 bcrypt 哈希存储。

        Raises:
            ValidationError: 邮箱为空、密码为空或邮箱已存在。
        """
        if not email or "@" not in email:
            raise ValidationError("邮箱无效")
        if not password:
            raise ValidationError("密码不能为空")

        merchant_id = uuid.uuid4().hex
        token = self._generate_token()
        password_hash = hash_password(password)
        now = format_time(datetime.now())

        db = get_db()
        try:
            db.execute(
                """INSERT INTO merchants
                   (id, email, password, wallet_url, callback_url, token, balance, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, 0, ?)""",
                (merchant_id, email, password_hash, wallet_url, callback_url, token, now),
            )
            db.commit()
        except sqlite3.IntegrityError as e:
            db.rollback()
            raise ValidationError(f"邮箱 '{email}' 已存在") from e
        finally:
            db.close()

        logger.info("商户已创建: id=%s, email=%s", merchant_id, email)
        return Merchant(
            id=merchant_id,
            email=email,
            password=password_hash,
            token=token,
            wallet_url=wallet_url,
            callback_url=callback_url,
            balance=0,
            created_at=parse_time(now),
        )

    def get_merchant(self, merchant_id: str) -> Merchant:
        """
        Raises:
            NotFoundError: 商户不存在。
        """
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM merchants WHERE id = ?", (merchant_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFoundError(f"商户 {merchant_id} 不存在")
        return Merchant.from_row(row)

    def verify_merchant_password(self, merchant_id: str, password: str) -> bool:
        merchant = self.get_merchant(merchant_id)
        return verify_password(password, merchant.password)

    def update_endpoints(
        self,
        merchant_id: str,
        wallet_url: str | None = None,
        callback_url: str | None = None,
    ) -> None:
        """更新商户的钱包地址和回调地址（None 表示不修改）。"""
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE merchants
                   SET wallet_url = COALESCE(?, wallet_url),
                       callback_url = COALESCE(?, callback_url)
                   WHERE id = ?""",
                (wallet_url, callback_url, merchant_id),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"商户 {merchant_id} 不存在")
        finally:
            db.close()


# ── 余额记账（在调用方的数据库事务内执行） ─────────────────


def credit_balance(db: sqlite3.Connection, merchant_id: str, amount: int) -> None:
    """给商户余额加上 amount，不提交事务。"""
    cursor = db.execute(
        "UPDATE merchants SET balance = balance + ? WHERE id = ?",
        (int(amount), merchant_id),
    )
    if cursor.rowcount == 0:
        raise NotFoundError(f"商户 {merchant_id} 不存在")


def debit_balance(db: sqlite3.Connection, merchant_id: str, amount: int) -> None:
    """
    条件扣减商户余额（balance >= amount 才扣减），不提交事务。

    Raises:
        InsufficientBalance: 余额不足。
        NotFoundError: 商户不存在。
    """
    cursor = db.execute(
        """UPDATE merchants SET balance = balance - ?
           WHERE id = ? AND balance >= ?""",
        (int(amount), merchant_id, int(amount)),
    )
    if cursor.rowcount == 1:
        return
    row = db.execute(
        "SELECT balance FROM merchants WHERE id = ?", (merchant_id,)
    ).fetchone()
    if not row:
        raise NotFoundError(f"商户 {merchant_id} 不存在")
    raise InsufficientBalance(
        f"余额不足: 可用 {row['balance']}, 需要 {amount}"
    )
