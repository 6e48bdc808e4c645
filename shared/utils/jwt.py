"""
JWT Token 工具模块

token 权限类型与管理 API 的 Bearer 认证都使用 HS256 签名的 JWT。
"""
from datetime import datetime, timedelta
from typing import Dict, Optional
from jose import JWTError, jwt
from shared.config import settings


def create_access_token(
    data: Dict,
    expires_delta: Optional[timedelta] = None,
    secret_key: Optional[str] = None,
) -> str:
    """
    创建 Access Token

    Args:
        data: Token 载荷数据（如 sub、role）
        expires_delta: 过期时间增量，默认 ACCESS_TOKEN_EXPIRE_MINUTES
        secret_key: 签名密钥，默认 JWT_SECRET_KEY

    Returns:
        JWT Token 字符串
    """
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "iat": datetime.utcnow(),
        "iss": settings.APP_NAME,
    })
    return jwt.encode(to_encode, secret_key or settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, secret_key: Optional[str] = None, audience: Optional[str] = None) -> Optional[Dict]:
    """
    解码并验证 Token

    Args:
        token: JWT Token 字符串
        secret_key: 验证密钥，默认 JWT_SECRET_KEY
        audience: 可选的 audience 验证

    Returns:
        Token 载荷数据，验证失败（签名错误、过期、格式非法）返回 None
    """
    options = {"verify_aud": bool(audience)}
    try:
        return jwt.decode(
            token,
            secret_key or settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            audience=audience,
            options=options,
        )
    except JWTError:
        return None
