"""
平台配置服务：管理 system_config 表的读写。

提供手续费方案、订单超时、提现确认数等运行期可调参数，
数据库中未配置时回退到环境变量，再回退到内置默认值。
"""

import json
import logging
import os
from datetime import datetime

from app.database import get_db
from app.models.schemas import format_time

logger = logging.getLogger(__name__)

# 内置默认值（单位：纳格林 / 秒）
DEFAULT_SETTINGS = {
    "minimal_payout": 1_000_000_000,
    "new_payment_ttl": 15 * 60,
    "pending_payment_ttl": 7 * 60,
    "initialized_payout_ttl": 5 * 60,
    "pending_payout_ttl": 15 * 60,
    "payout_confirmations": 10,
    "max_report_attempts": 10,
}

DEFAULT_FEE_SCHEDULE = {
    "share_bps": 100,  # 1%
    "transfer_fee": 8_000_000,
    "tiers": [],
}


class PlatformConfigError(Exception):
    """平台配置操作异常。"""
    pass


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """读取 system_config 表中指定 key 的值。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        db.close()


def set_config(key: str, value: str | None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入。"""
    now = format_time(datetime.now())
    db = get_db()
    try:
        db.execute(
            """INSERT INTO system_config (config_key, config_value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(config_key) DO UPDATE
               SET config_value = excluded.config_value,
                   updated_at = excluded.updated_at""",
            (key, value, now),
        )
        db.commit()
    finally:
        db.close()


# ── 整数参数 ──────────────────────────────────────────────


def get_setting(key: str) -> int:
    """
    读取整数参数：system_config → 环境变量（大写 key）→ 内置默认值。

    Raises:
        PlatformConfigError: 未知参数或配置值不是整数。
    """
    if key not in DEFAULT_SETTINGS:
        raise PlatformConfigError(f"未知配置项: {key}")

    raw = get_config(key)
    if raw is None:
        raw = os.getenv(key.upper())
    if raw is None:
        return DEFAULT_SETTINGS[key]

    try:
        return int(raw)
    except (TypeError, ValueError):
        raise PlatformConfigError(f"配置项 {key} 不是整数: {raw!r}")


def set_setting(key: str, value: int) -> None:
    if key not in DEFAULT_SETTINGS:
        raise PlatformConfigError(f"未知配置项: {key}")
    if int(value) < 0:
        raise PlatformConfigError(f"配置项 {key} 不能为负数")
    set_config(key, str(int(value)))
    logger.info("配置已更新: %s=%s", key, value)


# ── 手续费方案 ────────────────────────────────────────────


def get_fee_schedule() -> dict:
    """
    读取手续费方案。

    Returns:
        {"share_bps": int, "transfer_fee": int, "tiers": [[threshold, bps], ...]}
    """
    raw = get_config("fee_schedule") or os.getenv("FEE_SCHEDULE")
    if not raw:
        return dict(DEFAULT_FEE_SCHEDULE)
    try:
        return _normalize_fee_schedule(json.loads(raw))
    except (ValueError, TypeError) as e:
        raise PlatformConfigError(f"手续费方案格式无效: {e}")


def save_fee_schedule(schedule: dict) -> dict:
    """校验并保存手续费方案。"""
    try:
        normalized = _normalize_fee_schedule(schedule)
    except (ValueError, TypeError) as e:
        raise PlatformConfigError(f"手续费方案格式无效: {e}")
    set_config("fee_schedule", json.dumps(normalized))
    logger.info("手续费方案已更新: %s", normalized)
    return normalized


def _normalize_fee_schedule(data: dict) -> dict:
    share_bps = int(data.get("share_bps", DEFAULT_FEE_SCHEDULE["share_bps"]))
    transfer_fee = int(data.get("transfer_fee", DEFAULT_FEE_SCHEDULE["transfer_fee"]))
    tiers = sorted(
        [int(threshold), int(bps)] for threshold, bps in data.get("tiers", [])
    )
    if share_bps < 0 or transfer_fee < 0:
        raise ValueError("费率和转账费不能为负数")
    if any(threshold < 0 or bps < 0 for threshold, bps in tiers):
        raise ValueError("阶梯费率不能为负数")
    return {"share_bps": share_bps, "transfer_fee": transfer_fee, "tiers": tiers}
