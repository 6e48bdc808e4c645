"""
端点权限测试

每种 permission_type：未提供凭证 401，凭证错误 403，正确放行。
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import timedelta

import pytest

from services.endpoint.permissions import PermissionResolver
from shared.errors import PermissionDenied
from shared.events import EventBus
from shared.http_types import InboundRequest
from shared.utils.jwt import create_access_token
from shared.utils.security import compute_signature


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def resolver(bus):
    return PermissionResolver(bus)


def _request(headers=None, query=None, body=b"{}", client="10.0.0.5"):
    return InboundRequest(
        method="POST",
        path="custom/orders",
        headers=headers or {},
        query_params=query or {},
        body=body,
        client_host=client,
    )


def _definition(permission_type, config=None):
    return {"id": "ep-1", "permission_type": permission_type, "permission_config": config or {}}


def _status(resolver, request, definition):
    try:
        resolver.check(request, definition)
    except PermissionDenied as e:
        return e.status_code
    return 200


class TestPublicAndUnknown:

    def test_public_always_allowed(self, resolver):
        assert _status(resolver, _request(), _definition("public")) == 200

    def test_missing_type_is_public(self, resolver):
        assert resolver.allows(_request(), {"id": "ep-1"}) is True

    def test_unknown_type_denied(self, resolver):
        assert _status(resolver, _request(), _definition("oauth")) == 403


class TestSignature:

    CONFIG = {"secret": "s3cret"}

    def test_valid_signature(self, resolver):
        body = b'{"id": 7}'
        headers = {"X-Webhook-Signature": "sha256=" + compute_signature(body, "s3cret")}
        assert _status(resolver, _request(headers, body=body), _definition("signature", self.CONFIG)) == 200

    def test_missing_signature(self, resolver):
        assert _status(resolver, _request(), _definition("signature", self.CONFIG)) == 401

    def test_tampered_body(self, resolver):
        headers = {"X-Webhook-Signature": compute_signature(b'{"id": 7}', "s3cret")}
        request = _request(headers, body=b'{"id": 8}')
        assert _status(resolver, request, _definition("signature", self.CONFIG)) == 403

    def test_custom_header_and_base64(self, resolver):
        body = b"payload"
        config = {"secret": "k", "header": "X-Hub-Signature", "format": "base64"}
        headers = {"X-Hub-Signature": compute_signature(body, "k", fmt="base64")}
        assert _status(resolver, _request(headers, body=body), _definition("signature", config)) == 200

    def test_missing_secret_fails_closed(self, resolver):
        headers = {"X-Webhook-Signature": "abc"}
        assert _status(resolver, _request(headers), _definition("signature", {})) == 403


class TestApiKey:

    CONFIG = {"keys": ["k-1", "k-2"]}

    def test_header_key(self, resolver):
        assert _status(resolver, _request({"X-API-Key": "k-2"}), _definition("api_key", self.CONFIG)) == 200

    def test_query_key(self, resolver):
        assert _status(resolver, _request(query={"api_key": "k-1"}), _definition("api_key", self.CONFIG)) == 200

    def test_missing_key(self, resolver):
        assert _status(resolver, _request(), _definition("api_key", self.CONFIG)) == 401

    def test_wrong_key(self, resolver):
        assert _status(resolver, _request({"X-API-Key": "nope"}), _definition("api_key", self.CONFIG)) == 403

    def test_custom_header_name(self, resolver):
        config = {"keys": ["k"], "header": "X-Partner-Key"}
        assert _status(resolver, _request({"X-Partner-Key": "k"}), _definition("api_key", config)) == 200


class TestToken:

    def test_valid_bearer_token(self, resolver):
        token = create_access_token({"sub": "partner-1"})
        headers = {"Authorization": f"Bearer {token}"}
        assert _status(resolver, _request(headers), _definition("token")) == 200

    def test_missing_token(self, resolver):
        assert _status(resolver, _request(), _definition("token")) == 401
        assert _status(resolver, _request({"Authorization": "Bearer "}), _definition("token")) == 401

    def test_expired_token(self, resolver):
        token = create_access_token({"sub": "partner-1"}, expires_delta=timedelta(seconds=-10))
        assert _status(resolver, _request({"Authorization": f"Bearer {token}"}), _definition("token")) == 403

    def test_required_claims(self, resolver):
        token = create_access_token({"sub": "partner-1", "scope": "read"})
        headers = {"Authorization": f"Bearer {token}"}
        definition = _definition("token", {"required_claims": {"scope": "write"}})
        assert _status(resolver, _request(headers), definition) == 403

    def test_endpoint_secret(self, resolver):
        token = create_access_token({"sub": "p"}, secret_key="endpoint-secret")
        headers = {"Authorization": f"Bearer {token}"}
        assert _status(resolver, _request(headers), _definition("token", {"secret": "endpoint-secret"})) == 200
        assert _status(resolver, _request(headers), _definition("token")) == 403

    def test_pluggable_validator(self, bus):
        resolver = PermissionResolver(bus, token_validator=lambda token, config: token == "opaque")
        assert _status(resolver, _request({"Authorization": "opaque"}), _definition("token")) == 200
        assert _status(resolver, _request({"Authorization": "other"}), _definition("token")) == 403


class TestIpWhitelist:

    @pytest.mark.parametrize("client, expected", [
        ("192.168.1.20", 200),
        ("10.1.2.3", 200),
        ("172.16.0.1", 403),
    ])
    def test_patterns(self, resolver, client, expected):
        config = {"whitelist": ["192.168.1.0/24", "10.1.*.*"]}
        assert _status(resolver, _request(client=client), _definition("ip_whitelist", config)) == expected

    def test_empty_whitelist_allows_all(self, resolver):
        assert _status(resolver, _request(), _definition("ip_whitelist", {"whitelist": []})) == 200

    def test_forwarded_for_is_used(self, resolver):
        request = _request({"X-Forwarded-For": "192.168.1.7"}, client="127.0.0.1")
        definition = _definition("ip_whitelist", {"whitelist": ["192.168.1.0/24"]})
        assert _status(resolver, request, definition) == 200


class TestCustom:

    def test_denied_without_filter(self, resolver):
        assert _status(resolver, _request(), _definition("custom")) == 403

    def test_filter_decides(self, bus, resolver):
        bus.add_filter(
            "custom_permission_check",
            lambda allowed, request, definition: request.header("x-tenant") == "acme",
        )
        assert _status(resolver, _request({"X-Tenant": "acme"}), _definition("custom")) == 200
        assert _status(resolver, _request({"X-Tenant": "other"}), _definition("custom")) == 403
