"""
安全工具测试

- ip_matches: 精确 / CIDR / 通配符
- compute_signature / verify_signature: 签名正确通过，篡改请求体或签名失败
- get_client_ip / redact_headers / sanitize_filename
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import base64
import hashlib
import hmac

import pytest
from hypothesis import given, strategies as st, assume

from shared.utils.security import (
    REDACTED,
    compute_signature,
    constant_time_in,
    get_client_ip,
    ip_matches,
    redact_headers,
    sanitize_filename,
    verify_signature,
)


# ==================== IP 匹配 ====================

class TestIpMatches:

    def test_cidr_contains_address(self):
        assert ip_matches("192.168.1.42", "192.168.1.0/24") is True

    def test_cidr_excludes_other_network(self):
        assert ip_matches("192.168.2.1", "192.168.1.0/24") is False

    def test_exact_match(self):
        assert ip_matches("10.0.0.1", "10.0.0.1") is True
        assert ip_matches("10.0.0.2", "10.0.0.1") is False

    def test_wildcard(self):
        assert ip_matches("172.16.5.9", "172.16.*.*") is True
        assert ip_matches("172.17.5.9", "172.16.*.*") is False

    def test_zero_prefix_matches_everything(self):
        assert ip_matches("8.8.8.8", "0.0.0.0/0") is True

    def test_ipv6_cidr(self):
        assert ip_matches("2001:db8::1", "2001:db8::/32") is True
        assert ip_matches("2001:db9::1", "2001:db8::/32") is False

    def test_mixed_versions_never_match(self):
        assert ip_matches("::1", "127.0.0.0/8") is False

    @pytest.mark.parametrize("pattern", ["10.0.0.0/33", "10.0.0.0/abc", "not-an-ip/8"])
    def test_invalid_cidr(self, pattern):
        assert ip_matches("10.0.0.1", pattern) is False

    def test_empty_values(self):
        assert ip_matches("", "10.0.0.1") is False
        assert ip_matches("10.0.0.1", "") is False

    @given(
        a=st.integers(0, 255), b=st.integers(0, 255),
        c=st.integers(0, 255), d=st.integers(0, 255),
    )
    def test_every_address_in_its_own_slash24(self, a, b, c, d):
        """任一地址都命中其所在的 /24 网段"""
        assert ip_matches(f"{a}.{b}.{c}.{d}", f"{a}.{b}.{c}.0/24") is True

    @given(
        a=st.integers(0, 255), b=st.integers(0, 255), c=st.integers(0, 255),
        other=st.integers(0, 255), d=st.integers(0, 255),
    )
    def test_address_outside_slash24(self, a, b, c, other, d):
        assume(other != c)
        assert ip_matches(f"{a}.{b}.{other}.{d}", f"{a}.{b}.{c}.0/24") is False


# ==================== HMAC 签名 ====================

class TestSignature:

    def test_hex_signature_matches_hmac(self):
        body = b'{"id": 7}'
        expected = hmac.new(b"secret", body, hashlib.sha256).hexdigest()
        assert compute_signature(body, "secret") == expected

    def test_base64_signature(self):
        body = b"payload"
        expected = base64.b64encode(hmac.new(b"k", body, hashlib.sha256).digest()).decode()
        assert compute_signature(body, "k", fmt="base64") == expected

    def test_verify_accepts_prefixed_signature(self):
        body = b"abc"
        signature = "sha256=" + compute_signature(body, "s")
        assert verify_signature(body, "s", signature) is True

    def test_verify_rejects_missing_secret_or_signature(self):
        assert verify_signature(b"abc", None, "x") is False
        assert verify_signature(b"abc", "s", None) is False
        assert verify_signature(b"abc", "s", "") is False

    def test_unsupported_algorithm_fails_closed(self):
        assert verify_signature(b"abc", "s", "deadbeef", algorithm="nope") is False
        with pytest.raises(ValueError):
            compute_signature(b"abc", "s", algorithm="nope")

    @given(body=st.binary(min_size=0, max_size=256), secret=st.text(min_size=1, max_size=32))
    def test_correct_signature_always_verifies(self, body, secret):
        assert verify_signature(body, secret, compute_signature(body, secret)) is True

    @given(
        body=st.binary(min_size=1, max_size=256),
        secret=st.text(min_size=1, max_size=32),
        index=st.integers(min_value=0),
        flip=st.integers(min_value=1, max_value=255),
    )
    def test_any_body_mutation_fails(self, body, secret, index, flip):
        """修改请求体任一字节后签名校验失败"""
        signature = compute_signature(body, secret)
        mutated = bytearray(body)
        position = index % len(mutated)
        mutated[position] ^= flip
        assert verify_signature(bytes(mutated), secret, signature) is False

    @given(body=st.binary(max_size=64), secret=st.text(min_size=1, max_size=16), index=st.integers(min_value=0))
    def test_any_signature_mutation_fails(self, body, secret, index):
        signature = compute_signature(body, secret)
        position = index % len(signature)
        replacement = "0" if signature[position] != "0" else "1"
        tampered = signature[:position] + replacement + signature[position + 1:]
        assert verify_signature(body, secret, tampered) is False


# ==================== 其他 ====================

class TestHelpers:

    def test_constant_time_in(self):
        assert constant_time_in("b", ["a", "b"]) is True
        assert constant_time_in("c", ["a", "b"]) is False
        assert constant_time_in(None, ["a"]) is False

    def test_client_ip_prefers_forwarded_first_hop(self):
        headers = {"x-forwarded-for": "203.0.113.5, 10.0.0.1"}
        assert get_client_ip(headers, "127.0.0.1") == "203.0.113.5"

    def test_client_ip_falls_back_to_peer(self):
        assert get_client_ip({}, "127.0.0.1") == "127.0.0.1"

    def test_redact_headers(self):
        redacted = redact_headers({"Authorization": "Bearer x", "X-API-Key": "k", "Content-Type": "application/json"})
        assert redacted["authorization"] == REDACTED
        assert redacted["x-api-key"] == REDACTED
        assert redacted["content-type"] == "application/json"

    def test_sanitize_filename_strips_path_separators(self):
        cleaned = sanitize_filename("../../etc/passwd")
        assert "/" not in cleaned
        assert "\\" not in sanitize_filename("..\\boot.ini")
