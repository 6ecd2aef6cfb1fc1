"""
回调通知服务：订单进入 Confirmed / Rejected 后向商户发送 webhook。

核心功能：
- notify: 原子认领订单（reported=0 且未在通知中）后 POST JSON 到商户 callback_url
- retry_pending: 按退避时间重试失败的通知，间隔 10 * attempts^2 秒
- 达到 max_report_attempts 次仍失败 → callback_status=2，记 ERROR 日志等待人工处理
- 每次通知记录到 callback_logs 表

callback_status：0 待通知，1 成功，2 失败（已升级），3 通知中
"""

import logging
from datetime import datetime, timedelta

import httpx

from app.database import get_db
from app.models.schemas import (
    REPORTABLE_STATUSES,
    CallbackLog,
    Order,
    format_time,
    parse_time,
)
from app.services.errors import NotificationFailed
from app.services.platform_config import get_setting
from app.services.sign import generate_sign

logger = logging.getLogger(__name__)

CALLBACK_PENDING = 0
CALLBACK_SUCCESS = 1
CALLBACK_FAILED = 2
CALLBACK_SENDING = 3

# 认领超过该时长仍未结束，视为进程中断，允许重新认领
CLAIM_TIMEOUT = timedelta(seconds=60)


def retry_delay(attempts: int) -> timedelta:
    """第 attempts 次失败后的等待时间。"""
    return timedelta(seconds=10 * attempts * attempts)


class CallbackService:
    """回调通知服务。"""

    def _reportable_codes(self) -> tuple:
        return tuple(s.code for s in REPORTABLE_STATUSES)

    def _claim(self, order_id: str, now: datetime) -> bool:
        """
        原子认领一次通知：只有 reported=0、状态需通知、且没有其他进行中的
        认领时才成功，保证并发对账不会重复通知。
        """
        codes = self._reportable_codes()
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE orders
                   SET callback_status = ?, callback_claimed_at = ?
                   WHERE id = ? AND reported = 0 AND status IN (?, ?)
                     AND (callback_status = ?
                          OR (callback_status = ? AND callback_claimed_at < ?))""",
                (
                    CALLBACK_SENDING, format_time(now), order_id, *codes,
                    CALLBACK_PENDING, CALLBACK_SENDING,
                    format_time(now - CLAIM_TIMEOUT),
                ),
            )
            db.commit()
            return cursor.rowcount == 1
        finally:
            db.close()

    def _get_order_with_merchant(self, order_id: str) -> tuple[Order, dict] | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM orders WHERE id = ?", (order_id,)
            ).fetchone()
            if not row:
                return None
            merchant = db.execute(
                "SELECT id, callback_url, token FROM merchants WHERE id = ?",
                (row["merchant_id"],),
            ).fetchone()
            return Order.from_row(row), dict(merchant)
        finally:
            db.close()

    def build_payload(self, order: Order, token: str) -> dict:
        """构建签名后的通知参数。"""
        params = {
            "id": order.id,
            "external_id": order.external_id,
            "merchant_id": order.merchant_id,
            "order_type": order.order_type.value,
            "status": order.status.value,
            "grin_amount": order.grin_amount,
            "amount": order.amount.amount,
            "currency": order.amount.currency.value,
            "confirmations": order.confirmations,
        }
        params["sign"] = generate_sign(params, token)
        return params

    def _log_callback(
        self,
        order_id: str,
        attempt: int,
        url: str,
        status: int,
        http_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        """记录回调通知日志到 callback_logs 表。"""
        now = format_time(datetime.now())
        db = get_db()
        try:
            db.execute(
                """INSERT INTO callback_logs
                   (order_id, attempt, url, method, status, http_status,
                    response_body, created_at)
                   VALUES (?, ?, ?, 'POST', ?, ?, ?, ?)""",
                (order_id, attempt, url, status, http_status, response_body, now),
            )
            db.commit()
        finally:
            db.close()

    def _deliver(self, url: str, payload: dict) -> tuple[int, str]:
        """
        POST JSON 到商户地址，2xx 视为成功。

        Raises:
            NotificationFailed: 请求异常（含地址格式错误）或非 2xx 响应。
        """
        try:
            with httpx.Client(timeout=10.0) as client:
                resp = client.post(url, json=payload)
        except Exception as e:
            raise NotificationFailed(url, f"{type(e).__name__}: {e}")
        body = resp.text.strip()[:1000]
        if not resp.is_success:
            raise NotificationFailed(url, f"HTTP {resp.status_code}: {body}")
        return resp.status_code, body

    def _mark_reported(self, order_id: str, attempts: int) -> None:
        db = get_db()
        try:
            db.execute(
                """UPDATE orders
                   SET reported = 1, callback_status = ?, report_attempts = ?,
                       next_report_attempt = NULL
                   WHERE id = ?""",
                (CALLBACK_SUCCESS, attempts, order_id),
            )
            db.commit()
        finally:
            db.close()

    def _mark_failed(self, order_id: str, attempts: int, now: datetime) -> bool:
        """记录失败，返回 True 表示已达上限并升级。"""
        escalated = attempts >= get_setting("max_report_attempts")
        db = get_db()
        try:
            db.execute(
                """UPDATE orders
                   SET callback_status = ?, report_attempts = ?,
                       next_report_attempt = ?
                   WHERE id = ?""",
                (
                    CALLBACK_FAILED if escalated else CALLBACK_PENDING,
                    attempts,
                    None if escalated else format_time(now + retry_delay(attempts)),
                    order_id,
                ),
            )
            db.commit()
        finally:
            db.close()
        return escalated

    def notify(self, order_id: str) -> bool:
        """
        向商户发送一次状态通知。

        Returns:
            True 表示本次调用完成了通知（商户返回 2xx，或商户未配置回调地址）；
            False 表示未认领到（已通知 / 通知中 / 已升级）或发送失败。
        """
        now = datetime.now()
        if not self._claim(order_id, now):
            logger.debug("通知已被处理，跳过 (order_id=%s)", order_id)
            return False

        loaded = self._get_order_with_merchant(order_id)
        if loaded is None:
            logger.warning("回调通知失败：订单不存在 (order_id=%s)", order_id)
            return False
        order, merchant = loaded
        attempts = order.report_attempts + 1

        callback_url = merchant.get("callback_url")
        if not callback_url:
            self._mark_reported(order_id, order.report_attempts)
            logger.info("商户无 callback_url，跳过回调 (order_id=%s)", order_id)
            return True

        payload = self.build_payload(order, merchant["token"])
        try:
            http_status, body = self._deliver(callback_url, payload)
        except NotificationFailed as e:
            self._log_callback(
                order_id, attempts, callback_url, order.status.code, None, e.error,
            )
            if self._mark_failed(order_id, attempts, now):
                logger.error(
                    "回调通知全部失败，需要人工处理 (order_id=%s, attempts=%d): %s",
                    order_id, attempts, e.error,
                )
            else:
                logger.warning(
                    "回调通知失败，等待重试 (order_id=%s, attempt=%d): %s",
                    order_id, attempts, e.error,
                )
            return False

        self._log_callback(
            order_id, attempts, callback_url, order.status.code, http_status, body,
        )
        self._mark_reported(order_id, attempts)
        logger.info(
            "回调通知成功 (order_id=%s, status=%s, attempt=%d)",
            order_id, order.status.value, attempts,
        )
        return True

    def retry_pending(self, now: datetime | None = None) -> dict:
        """
        重试已到退避时间的未通知订单，单笔失败不影响其他订单。

        Returns:
            {"sent": int, "failed": int}
        """
        now = now or datetime.now()
        codes = self._reportable_codes()
        db = get_db()
        try:
            rows = db.execute(
                """SELECT id FROM orders
                   WHERE reported = 0 AND status IN (?, ?)
                     AND ((callback_status = ?
                           AND (next_report_attempt IS NULL OR next_report_attempt <= ?))
                          OR (callback_status = ? AND callback_claimed_at < ?))
                   ORDER BY updated_at ASC""",
                (
                    *codes, CALLBACK_PENDING, format_time(now),
                    CALLBACK_SENDING, format_time(now - CLAIM_TIMEOUT),
                ),
            ).fetchall()
        finally:
            db.close()

        sent = failed = 0
        for row in rows:
            try:
                if self.notify(row["id"]):
                    sent += 1
                else:
                    failed += 1
            except Exception as e:
                failed += 1
                logger.error("重试通知异常 (order_id=%s): %s", row["id"], e)
        return {"sent": sent, "failed": failed}

    def list_failed_notifications(self, merchant_id: str | None = None) -> list[Order]:
        """已升级（超过最大重试次数）的通知，等待人工处理。可按商户过滤。"""
        sql = "SELECT * FROM orders WHERE callback_status = ?"
        params = [CALLBACK_FAILED]
        if merchant_id is not None:
            sql += " AND merchant_id = ?"
            params.append(merchant_id)
        db = get_db()
        try:
            rows = db.execute(sql + " ORDER BY updated_at ASC", params).fetchall()
            return [Order.from_row(row) for row in rows]
        finally:
            db.close()

    def requeue(self, order_id: str) -> bool:
        """人工处理后重新排队一条已升级的通知。"""
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE orders
                   SET callback_status = ?, report_attempts = 0,
                       next_report_attempt = NULL
                   WHERE id = ? AND callback_status = ?""",
                (CALLBACK_PENDING, order_id, CALLBACK_FAILED),
            )
            db.commit()
            return cursor.rowcount == 1
        finally:
            db.close()

    def get_callback_logs(self, order_id: str) -> list[CallbackLog]:
        db = get_db()
        try:
            rows = db.execute(
                "SELECT * FROM callback_logs WHERE order_id = ? ORDER BY id ASC",
                (order_id,),
            ).fetchall()
        finally:
            db.close()
        return [
            CallbackLog(
                id=row["id"],
                order_id=row["order_id"],
                attempt=row["attempt"],
                url=row["url"],
                method=row["method"],
                status=row["status"],
                http_status=row["http_status"],
                response_body=row["response_body"],
                created_at=parse_time(row["created_at"]),
            )
            for row in rows
        ]
