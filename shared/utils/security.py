"""
安全工具模块

提供:
  - HMAC 签名计算与恒定时间校验（hex / base64 两种摘要格式）
  - 客户端 IP 解析（CDN 头 → X-Forwarded-For 首跳 → X-Real-IP → 直连地址）
  - IP 白名单匹配（精确 / CIDR / 通配符）
  - 敏感请求头脱敏
  - 文件名清理（防路径遍历）
"""
import base64
import hashlib
import hmac
import ipaddress
import re
from typing import Dict, Iterable, Mapping, Optional


REDACTED = "[REDACTED]"

# 落库前需脱敏的请求头（小写）
SENSITIVE_HEADERS = frozenset({
    "authorization",
    "x-api-key",
    "x-auth-token",
    "cookie",
    "x-webhook-secret",
})

# 客户端 IP 解析顺序
CLIENT_IP_HEADERS = ("CF-Connecting-IP", "X-Forwarded-For", "X-Real-IP")

SIGNATURE_PREFIX_PATTERN = re.compile(r"^(sha\d+|hmac)=", re.IGNORECASE)


# ==================== HMAC 签名 ====================

def compute_signature(body: bytes, secret: str, algorithm: str = "sha256", fmt: str = "hex") -> str:
    """
    计算请求体的 HMAC 签名。

    Args:
        body: 原始请求体
        secret: 共享密钥
        algorithm: hashlib 算法名，默认 sha256
        fmt: 摘要格式 hex 或 base64

    Returns:
        签名字符串

    Raises:
        ValueError: 不支持的算法
    """
    if isinstance(body, str):
        body = body.encode("utf-8")
    algorithm = (algorithm or "sha256").lower()
    if algorithm not in hashlib.algorithms_available:
        raise ValueError(f"Unsupported signature algorithm: {algorithm}")
    mac = hmac.new(secret.encode("utf-8"), body, algorithm)
    if fmt == "base64":
        return base64.b64encode(mac.digest()).decode("ascii")
    return mac.hexdigest()


def strip_signature_prefix(signature: str) -> str:
    """去掉 sha256= / sha1= / hmac= 之类的前缀"""
    return SIGNATURE_PREFIX_PATTERN.sub("", (signature or "").strip())


def verify_signature(
    body: bytes,
    secret: Optional[str],
    signature: Optional[str],
    algorithm: str = "sha256",
    fmt: str = "hex",
) -> bool:
    """
    恒定时间比较签名，header 或 secret 缺失一律失败。
    """
    if not secret or not signature:
        return False
    try:
        expected = compute_signature(body, secret, algorithm, fmt)
    except ValueError:
        return False
    provided = strip_signature_prefix(signature)
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def constant_time_in(value: Optional[str], candidates: Iterable[str]) -> bool:
    """恒定时间的列表成员判断，遍历全部候选不提前返回"""
    if not value:
        return False
    found = False
    encoded = value.encode("utf-8")
    for candidate in candidates:
        if hmac.compare_digest(encoded, str(candidate).encode("utf-8")):
            found = True
    return found


# ==================== 客户端 IP ====================

def get_client_ip(headers: Mapping[str, str], client_host: Optional[str] = None) -> Optional[str]:
    """
    获取客户端IP地址

    Args:
        headers: 请求头（大小写不敏感的映射，如 starlette Headers）
        client_host: 直连地址

    Returns:
        第一个非空的候选地址
    """
    for header in CLIENT_IP_HEADERS:
        value = headers.get(header) or headers.get(header.lower())
        if value:
            # X-Forwarded-For可能包含多个IP，取第一个
            first = value.split(",")[0].strip()
            if first:
                return first
    return client_host or None


def ip_matches(ip: str, pattern: str) -> bool:
    """
    判断 IP 是否命中白名单条目。

    条目格式:
      - 精确地址: 10.0.0.1
      - CIDR: 192.168.1.0/24（地址与掩码按位与后比较网络号）
      - 通配符: 192.168.*.*

    Args:
        ip: 客户端 IP
        pattern: 白名单条目

    Returns:
        是否匹配；格式非法时返回 False
    """
    if not ip or not pattern:
        return False
    ip = ip.strip()
    pattern = pattern.strip()

    if ip == pattern:
        return True

    if "/" in pattern:
        network, _, bits = pattern.partition("/")
        try:
            address = ipaddress.ip_address(ip)
            subnet = ipaddress.ip_address(network)
            prefix = int(bits)
        except ValueError:
            return False
        if address.version != subnet.version:
            return False
        width = address.max_prefixlen
        if not 0 <= prefix <= width:
            return False
        mask = ((1 << width) - 1) ^ ((1 << (width - prefix)) - 1)
        return (int(address) & mask) == (int(subnet) & mask)

    if "*" in pattern:
        regex = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
        return re.match(regex, ip) is not None

    return False


# ==================== 请求头脱敏 ====================

def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """敏感请求头值替换为 [REDACTED]，键统一小写"""
    redacted = {}
    for key, value in headers.items():
        lower = key.lower()
        redacted[lower] = REDACTED if lower in SENSITIVE_HEADERS else value
    return redacted


# ==================== 文件名 ====================

def sanitize_filename(filename: str) -> str:
    """
    清理文件名，防止路径遍历攻击

    Args:
        filename: 文件名

    Returns:
        清理后的文件名
    """
    if not filename:
        return ""

    # 移除路径分隔符
    cleaned = filename.replace('/', '').replace('\\', '')

    # 移除特殊字符
    cleaned = re.sub(r'[^\w\s.-]', '', cleaned)

    # 移除开头的点（隐藏文件）
    cleaned = cleaned.lstrip('.')

    return cleaned
