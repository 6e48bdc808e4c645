"""
JWT Token 测试

对于任意载荷，生成的 Access Token 应能通过签名验证并还原载荷；
过期、密钥错误或格式非法的 Token 解码返回 None。
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import timedelta

from hypothesis import given, strategies as st

from shared.config import settings
from shared.utils.jwt import create_access_token, decode_token


# 主体ID生成器（UUID字符串）
subjects = st.uuids().map(str)

# 角色生成器
roles = st.sampled_from(['admin', 'viewer', 'partner'])

# 作用域列表生成器
scopes = st.lists(
    st.sampled_from(['orders:read', 'orders:write', 'etl:run', 'webhooks:retry']),
    min_size=0,
    max_size=4,
    unique=True
)


@given(subject=subjects, role=roles, token_scopes=scopes)
def test_token_round_trip(subject, role, token_scopes):
    """
    生成的 Token 应该：
    1. 是非空字符串
    2. 能通过签名验证
    3. 包含原始载荷与 exp / iat / iss
    """
    token = create_access_token({"sub": subject, "role": role, "scopes": token_scopes})

    assert isinstance(token, str) and token

    decoded = decode_token(token)
    assert decoded is not None
    assert decoded["sub"] == subject
    assert decoded["role"] == role
    assert decoded["scopes"] == token_scopes
    assert decoded["iss"] == settings.APP_NAME
    assert decoded["exp"] > decoded["iat"]


def test_expired_token_rejected():
    token = create_access_token({"sub": "x"}, expires_delta=timedelta(seconds=-1))
    assert decode_token(token) is None


def test_wrong_secret_rejected():
    token = create_access_token({"sub": "x"}, secret_key="endpoint-secret")
    assert decode_token(token) is None
    assert decode_token(token, secret_key="endpoint-secret")["sub"] == "x"


def test_malformed_token_rejected():
    assert decode_token("not-a-jwt") is None


def test_audience_checked_when_given():
    token = create_access_token({"sub": "x", "aud": "partners"})
    assert decode_token(token, audience="partners")["sub"] == "x"
    assert decode_token(token, audience="internal") is None
