"""外部协作方回调的 HMAC-SHA256 签名生成与验证。"""

import hashlib
import hmac
import os


def callback_key() -> str:
    return os.getenv("CALLBACK_KEY", "")


def generate_sign(params: dict, key: str) -> str:
    """
    生成签名。

    1. 过滤空值和 sign 参数
    2. 按参数名 ASCII 码从小到大排序
    3. 拼接 k=v&k=v（参数值不 URL 编码）
    4. 以 key 做 HMAC-SHA256，返回小写十六进制
    """
    filtered = {
        k: v
        for k, v in params.items()
        if k != "sign" and v is not None and str(v) != ""
    }
    message = "&".join(f"{k}={filtered[k]}" for k in sorted(filtered))
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_sign(params: dict, key: str, sign: str) -> bool:
    """验证签名。未配置 key 时一律拒绝。"""
    if not key or not sign:
        return False
    return hmac.compare_digest(generate_sign(params, key), sign)
