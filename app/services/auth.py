"""
商户认证模块：密码 bcrypt 哈希、API 令牌校验、FastAPI 依赖项。
"""

import hmac

import bcrypt
from fastapi import Header, HTTPException, Path

from app.database import get_db


def hash_password(password: str) -> str:
    """使用 bcrypt 对密码进行哈希。"""
    return bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """验证密码是否与 bcrypt 哈希匹配。"""
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def authenticate_merchant(merchant_id: str, token: str | None) -> dict:
    """
    校验商户 ID 与 API 令牌。

    Returns:
        商户记录字典。

    Raises:
        ValueError: 令牌缺失、商户不存在或令牌错误。
    """
    if not token:
        raise ValueError("未提供商户令牌")

    db = get_db()
    try:
        row = db.execute(
            "SELECT * FROM merchants WHERE id = ?", (merchant_id,)
        ).fetchone()
    finally:
        db.close()

    if not row:
        raise ValueError("商户不存在")
    if not hmac.compare_digest(row["token"], token):
        raise ValueError("商户令牌错误")
    return dict(row)


def get_current_merchant(
    merchant_id: str = Path(...),
    x_merchant_token: str | None = Header(None),
) -> dict:
    """
    FastAPI 依赖项：从 X-Merchant-Token header 校验路径中的商户。

    Raises:
        HTTPException(401): 令牌缺失或无效。
    """
    try:
        return authenticate_merchant(merchant_id, x_merchant_token)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))
