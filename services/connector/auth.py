"""
外部服务认证策略

auth_type → 请求头:
  none      无
  api_key   {header_name (默认 X-API-Key): api_key}
  bearer    Authorization: Bearer <token>
  basic     Authorization: Basic base64(username:password)
  oauth2    client_credentials 换取 access_token，缓存于 Redis，提前 300 秒过期（至少 60 秒）
  custom    auth_config.headers 原样使用
"""
import base64
import logging
from enum import Enum
from typing import Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

OAUTH_TOKEN_PREFIX = "connector_oauth_token:"
OAUTH_EXPIRY_MARGIN = 300
OAUTH_MIN_TTL = 60
OAUTH_DEFAULT_EXPIRES_IN = 3600
OAUTH_REQUEST_TIMEOUT = 30.0


class AuthType(str, Enum):
    NONE = "none"
    API_KEY = "api_key"
    BEARER = "bearer"
    BASIC = "basic"
    OAUTH2 = "oauth2"
    CUSTOM = "custom"


class AuthHeaderResolver:
    """
    根据服务配置生成认证请求头

    Args:
        redis: Redis 客户端，用于缓存 OAuth2 令牌
        http_client: httpx.Client，用于请求令牌端点
    """

    def __init__(self, redis, http_client: httpx.Client):
        self.redis = redis
        self.http_client = http_client
        self._strategies: Dict[AuthType, Callable[[dict, dict], Dict[str, str]]] = {
            AuthType.NONE: lambda config, service: {},
            AuthType.API_KEY: self._api_key,
            AuthType.BEARER: self._bearer,
            AuthType.BASIC: self._basic,
            AuthType.OAUTH2: self._oauth2,
            AuthType.CUSTOM: self._custom,
        }

    def resolve(self, service: dict) -> Dict[str, str]:
        """
        Args:
            service: ExternalService.to_dict() 结果

        Returns:
            认证请求头；auth_type 未知时返回空字典并记录警告
        """
        try:
            auth_type = AuthType(service.get("auth_type") or AuthType.NONE.value)
        except ValueError:
            logger.warning("Unknown auth type | service_id=%s | auth_type=%s",
                           service.get("id"), service.get("auth_type"))
            return {}
        return self._strategies[auth_type](service.get("auth_config") or {}, service)

    # ------------------------------------------------------------------

    @staticmethod
    def _api_key(config: dict, service: dict) -> Dict[str, str]:
        api_key = config.get("api_key")
        if not api_key:
            return {}
        return {config.get("header_name") or "X-API-Key": str(api_key)}

    @staticmethod
    def _bearer(config: dict, service: dict) -> Dict[str, str]:
        token = config.get("token")
        return {"Authorization": f"Bearer {token}"} if token else {}

    @staticmethod
    def _basic(config: dict, service: dict) -> Dict[str, str]:
        username = config.get("username")
        if not username:
            return {}
        password = config.get("password") or ""
        credentials = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {credentials}"}

    @staticmethod
    def _custom(config: dict, service: dict) -> Dict[str, str]:
        headers = config.get("headers") or {}
        return {str(k): str(v) for k, v in headers.items()}

    def _oauth2(self, config: dict, service: dict) -> Dict[str, str]:
        token_key = f"{OAUTH_TOKEN_PREFIX}{service.get('id')}"
        cached = self.redis.get(token_key)
        if cached:
            return {"Authorization": f"Bearer {cached}"}

        token = self.fetch_oauth2_token(config)
        if not token:
            return {}

        expires_in = int(config.get("expires_in") or OAUTH_DEFAULT_EXPIRES_IN)
        self.redis.setex(token_key, max(OAUTH_MIN_TTL, expires_in - OAUTH_EXPIRY_MARGIN), token)
        return {"Authorization": f"Bearer {token}"}

    def fetch_oauth2_token(self, config: dict) -> Optional[str]:
        """
        client_credentials 换取 access_token。

        Returns:
            access_token，令牌端点不可用或响应缺字段时返回 None
        """
        token_url = config.get("token_url")
        client_id = config.get("client_id")
        if not token_url or not client_id:
            return None

        form = {
            "grant_type": config.get("grant_type") or "client_credentials",
            "client_id": client_id,
        }
        if config.get("client_secret"):
            form["client_secret"] = config["client_secret"]
        if config.get("scope"):
            form["scope"] = config["scope"]

        try:
            response = self.http_client.post(
                token_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=OAUTH_REQUEST_TIMEOUT,
            )
        except httpx.HTTPError as e:
            logger.error("OAuth2 token request failed | url=%s | error=%s", token_url, e)
            return None

        try:
            body = response.json()
        except ValueError:
            logger.error("OAuth2 token response is not JSON | url=%s | status=%s", token_url, response.status_code)
            return None
        if not isinstance(body, dict):
            return None
        return body.get("access_token")

    def invalidate(self, service_id) -> None:
        self.redis.delete(f"{OAUTH_TOKEN_PREFIX}{service_id}")
