"""
订单服务模块：创建订单、订单查询、汇率换算。
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_FLOOR

import httpx

from app.database import get_db
from app.models.schemas import Currency, Money, Order, OrderStatus, TransactionType, format_time
from app.services.errors import NotFoundError, ValidationError
from app.services.platform_config import get_setting

logger = logging.getLogger(__name__)

RATES_API_URL = (
    "https://api.coingecko.com/api/v3/simple/price"
    "?ids=grin&vs_currencies=btc,usd,eur"
)

MAX_CONFIRMATIONS = 1000


class OrderService:
    """订单服务：创建订单、查询订单。"""

    def create_order(self, params: dict) -> Order:
        """
        创建支付订单：
        1. 校验商户、外部订单号、确认数
        2. 解析金额（多币种），非 GRIN 按汇率换算为纳格林
        3. 计算过期时间（默认 new_payment_ttl）
        4. 持久化订单记录，状态为 New

        Args:
            params: 包含 merchant_id, external_id, amount, confirmations,
                email, message, redirect_url, expires_in 的字典。

        Returns:
            创建成功的 Order 对象。

        Raises:
            ValidationError: 参数无效、商户不存在、外部订单号重复。
        """
        merchant_id = params.get("merchant_id")
        external_id = params.get("external_id")
        email = params.get("email")
        message = params.get("message") or ""
        redirect_url = params.get("redirect_url")

        if not external_id:
            raise ValidationError("缺少外部订单号")

        try:
            confirmations = int(params.get("confirmations", 0))
        except (TypeError, ValueError):
            raise ValidationError("确认数无效")
        if confirmations < 0 or confirmations > MAX_CONFIRMATIONS:
            raise ValidationError("确认数超出范围")

        try:
            amount = Money.from_dict(params.get("amount") or {})
        except ValueError as e:
            raise ValidationError(str(e))
        if amount.amount <= 0:
            raise ValidationError("金额必须大于 0")

        grin_amount = convert_to_grin(amount)
        if grin_amount <= 0:
            raise ValidationError("换算后的格林金额必须大于 0")

        expires_in = params.get("expires_in")
        try:
            ttl = int(expires_in) if expires_in else get_setting("new_payment_ttl")
        except (TypeError, ValueError):
            raise ValidationError("过期时间无效")
        if ttl <= 0:
            raise ValidationError("过期时间必须大于 0")

        now_dt = datetime.now()
        now = format_time(now_dt)
        expires_at = format_time(now_dt + timedelta(seconds=ttl))
        order_id = str(uuid.uuid4())

        db = get_db()
        try:
            if not db.execute(
                "SELECT 1 FROM merchants WHERE id = ?", (merchant_id,)
            ).fetchone():
                raise ValidationError("商户不存在")

            db.execute(
                """INSERT INTO orders
                   (id, external_id, merchant_id, order_type, grin_amount, amount,
                    status, confirmations, email, message, redirect_url,
                    expires_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    order_id, external_id, merchant_id,
                    TransactionType.PAYMENT.value, grin_amount, amount.to_json(),
                    OrderStatus.NEW.code, confirmations, email, message,
                    redirect_url, expires_at, now, now,
                ),
            )
            db.commit()
        except sqlite3.IntegrityError as e:
            db.rollback()
            raise ValidationError(f"外部订单号 '{external_id}' 已存在") from e
        finally:
            db.close()

        logger.info(
            "订单已创建: id=%s, merchant_id=%s, external_id=%s, grin_amount=%d",
            order_id, merchant_id, external_id, grin_amount,
        )
        return self.get_order(order_id)

    def get_order(self, order_id: str) -> Order:
        """
        Raises:
            NotFoundError: 订单不存在。
        """
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM orders WHERE id = ?", (order_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFoundError(f"订单 {order_id} 不存在")
        return Order.from_row(row)

    def get_order_by_external_id(self, merchant_id: str, external_id: str) -> Order:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM orders WHERE merchant_id = ? AND external_id = ?",
                (merchant_id, external_id),
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFoundError(f"订单 {external_id} 不存在")
        return Order.from_row(row)

    def list_orders(self, merchant_id: str, offset: int = 0, limit: int = 20) -> list[Order]:
        """按创建时间倒序列出商户订单。"""
        db = get_db()
        try:
            rows = db.execute(
                """SELECT * FROM orders WHERE merchant_id = ?
                   ORDER BY created_at DESC LIMIT ? OFFSET ?""",
                (merchant_id, limit, offset),
            ).fetchall()
            return [Order.from_row(row) for row in rows]
        finally:
            db.close()


# ── 汇率 ──────────────────────────────────────────────────


def register_rates(rates: dict) -> None:
    """
    保存汇率：{currency: 1 GRIN 对应的该币种价格}。

    Raises:
        ValidationError: 币种不支持或汇率不是正数。
    """
    now = format_time(datetime.now())
    parsed = {}
    for currency, rate in rates.items():
        try:
            cur = Currency(currency.upper())
            value = Decimal(str(rate))
        except (ValueError, InvalidOperation):
            raise ValidationError(f"汇率无效: {currency}={rate}")
        if cur == Currency.GRIN or value <= 0:
            raise ValidationError(f"汇率无效: {currency}={rate}")
        parsed[cur.value] = value

    db = get_db()
    try:
        for cur, value in parsed.items():
            db.execute(
                """INSERT INTO rates (id, rate, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(id) DO UPDATE
                   SET rate = excluded.rate, updated_at = excluded.updated_at""",
                (cur, str(value), now),
            )
        db.commit()
    finally:
        db.close()


def get_rate(currency: Currency) -> Decimal | None:
    db = get_db()
    try:
        row = db.execute(
            "SELECT rate FROM rates WHERE id = ?", (currency.value,)
        ).fetchone()
        return Decimal(row["rate"]) if row else None
    finally:
        db.close()


def convert_to_grin(money: Money) -> int:
    """
    将金额换算为纳格林（向下取整）。

    Raises:
        ValidationError: 缺少该币种汇率。
    """
    if money.currency == Currency.GRIN:
        return money.amount

    rate = get_rate(money.currency)
    if rate is None:
        raise ValidationError(f"不支持的币种: {money.currency.value}")

    grins = (
        Decimal(money.amount) * Currency.GRIN.precision
        / (Decimal(money.currency.precision) * rate)
    )
    return int(grins.to_integral_value(rounding=ROUND_FLOOR))


def fetch_rates() -> dict:
    """
    从行情接口拉取 GRIN 价格并保存。

    Returns:
        保存的汇率字典，如 {"USD": Decimal("2.5")}。

    Raises:
        httpx.HTTPError: 请求失败。
    """
    with httpx.Client(timeout=10.0) as client:
        resp = client.get(RATES_API_URL, headers={"Accept": "application/json"})
        resp.raise_for_status()
        data = resp.json()

    rates = {
        currency.upper(): Decimal(str(value))
        for currency, value in (data.get("grin") or {}).items()
    }
    if rates:
        register_rates(rates)
        logger.info("汇率已更新: %s", rates)
    return rates
