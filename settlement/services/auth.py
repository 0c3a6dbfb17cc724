"""
认证模块：JWT 令牌签发/验证、管理员 bcrypt 密码、FastAPI 角色依赖项。

买家与卖家的身份由外部账户系统签发令牌，这里只负责验证；
管理员账号保存在本地 admin 表，登录后签发 admin 令牌。
"""

import os
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import HTTPException, Request
from jose import JWTError, jwt

from settlement.database import get_db

JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = 24

ROLES = ("buyer", "seller", "admin")


def _secret() -> str:
    return os.environ.get("JWT_SECRET", "change-me-to-a-random-secret-key")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(user_id: int, role: str, expire_hours: int = JWT_EXPIRE_HOURS) -> str:
    """签发令牌，sub 为用户 ID，role 为 buyer / seller / admin。"""
    if role not in ROLES:
        raise ValueError(f"未知角色: {role}")
    expire = datetime.now(timezone.utc) + timedelta(hours=expire_hours)
    payload = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(payload, _secret(), algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """
    解码并验证令牌。

    Returns:
        {"user_id": int, "role": str}

    Raises:
        ValueError: 令牌无效、已过期或缺少身份信息。
    """
    try:
        payload = jwt.decode(token, _secret(), algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise ValueError(f"令牌无效: {e}")

    sub = payload.get("sub")
    role = payload.get("role")
    if sub is None or role not in ROLES:
        raise ValueError("令牌缺少身份信息")
    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        raise ValueError("令牌用户标识无效")
    return {"user_id": user_id, "role": role}


def authenticate(username: str, password: str) -> dict:
    """
    管理员登录。

    Returns:
        {"code": 1, "token": "..."}

    Raises:
        ValueError: 用户名或密码错误。
    """
    db = get_db()
    try:
        admin = db.execute(
            "SELECT id, password_hash FROM admin WHERE username = ?", (username,)
        ).fetchone()
    finally:
        db.close()

    if not admin or not verify_password(password, admin["password_hash"]):
        raise ValueError("用户名或密码错误")
    return {"code": 1, "token": create_token(admin["id"], "admin")}


def get_current_user(request: Request) -> dict:
    """
    FastAPI 依赖项：从 Authorization: Bearer 头提取并验证令牌。

    Raises:
        HTTPException(401): 令牌缺失或无效。
    """
    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else None
    if not token:
        raise HTTPException(status_code=401, detail="未提供认证令牌")

    try:
        return verify_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="认证令牌无效或已过期")


def require_role(*roles: str):
    """生成依赖项：要求当前用户具有指定角色之一，否则 403。"""

    def dependency(request: Request) -> dict:
        user = get_current_user(request)
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail="无权访问")
        return user

    return dependency
