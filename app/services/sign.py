"""HMAC-SHA256 回调签名生成与验证模块。"""

import hashlib
import hmac


def generate_sign(params: dict, key: str) -> str:
    """
    生成 HMAC-SHA256 签名。

    1. 过滤空值和 sign 参数
    2. 按参数名 ASCII 码从小到大排序
    3. 拼接 URL 键值对（参数值不 URL 编码）
    4. 以商户令牌为密钥计算 HMAC-SHA256

    返回小写 64 位十六进制签名字符串。
    """
    filtered = {
        k: v
        for k, v in params.items()
        if k != "sign" and v is not None and str(v) != ""
    }
    query_string = "&".join(f"{k}={filtered[k]}" for k in sorted(filtered))
    return hmac.new(
        key.encode("utf-8"), query_string.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def verify_sign(params: dict, key: str, sign: str) -> bool:
    """验证回调签名是否正确。"""
    return hmac.compare_digest(generate_sign(params, key), sign or "")
