"""
Avito marketplace API client.

One instance per tenant account, built and owned by TenantClientCache.
Every request carries a bearer token from the embedded OAuthTokenManager;
a 401 triggers exactly one token re-acquisition and one retry.

Only the calls the platform needs are wrapped: account info, balance,
chats, sending messages, presence and webhook registration.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from src.integrations.avito.oauth import OAuthTokenManager
from src.integrations.avito.proxy import ProxyDescriptor
from src.platform.errors import AppError, AuthExpiredError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

PROXY_CHECK_TIMEOUT_SECONDS = 10.0


class AvitoClient:
    """
    Tenant-bound client for the marketplace REST API.

    Usage:
        client = await cache.get_or_create(tenant_id)
        info = await client.get_account_info()
    """

    def __init__(
        self,
        tenant_id: int,
        http: httpx.AsyncClient,
        token_manager: OAuthTokenManager,
        remote_user_id: Optional[str] = None,
        proxy: Optional[ProxyDescriptor] = None,
    ):
        """
        Args:
            tenant_id: Marketplace account id
            http: Client routed through the tenant's proxy, base_url = API root
            token_manager: Token state owner, sharing the same http client
            remote_user_id: Marketplace user id; resolved lazily when missing
            proxy: Routing descriptor, kept for proxy checks and logs
        """
        self.tenant_id = tenant_id
        self.token_manager = token_manager
        self.proxy = proxy
        self._http = http
        self._remote_user_id = remote_user_id
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        """Release connections and proxy sockets."""
        if self._closed:
            return
        self._closed = True
        await self._http.aclose()
        logger.debug("Marketplace client closed", extra={"tenant_id": self.tenant_id})

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def _send(self, method: str, path: str, token: str, **kwargs) -> httpx.Response:
        if self._closed or self._http.is_closed:
            raise UpstreamUnavailableError("Marketplace client was disposed; fetch a fresh one")
        headers = {"Authorization": f"Bearer {token}"}
        try:
            return await self._http.request(method, path, headers=headers, **kwargs)
        except httpx.RequestError as e:
            logger.error(
                "Marketplace request failed",
                extra={
                    "tenant_id": self.tenant_id,
                    "method": method,
                    "path": path,
                    "error_type": type(e).__name__,
                }
            )
            raise UpstreamUnavailableError(f"Marketplace unreachable: {type(e).__name__}")

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """
        Perform an authorized request and return the decoded JSON body.

        Raises:
            AuthExpiredError: If the marketplace rejects a freshly acquired token
            UpstreamUnavailableError: For transport errors and non-2xx answers
        """
        token = await self.token_manager.get_access_token()
        response = await self._send(method, path, token, **kwargs)

        if response.status_code == 401:
            token = await self.token_manager.handle_unauthorized(rejected_token=token)
            response = await self._send(method, path, token, **kwargs)
            if response.status_code == 401:
                raise AuthExpiredError(
                    "Marketplace rejected the refreshed token",
                    details={"tenant_id": self.tenant_id, "path": path},
                )

        if not response.is_success:
            logger.error(
                "Marketplace API error",
                extra={
                    "tenant_id": self.tenant_id,
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                }
            )
            raise UpstreamUnavailableError(
                f"Marketplace API returned {response.status_code}",
                upstream_status=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise UpstreamUnavailableError(
                "Marketplace API returned invalid JSON",
                upstream_status=response.status_code,
            )

    async def get_account_info(self) -> Dict[str, Any]:
        info = await self._request("GET", "/core/v1/accounts/self")
        if self._remote_user_id is None and info.get("id") is not None:
            self._remote_user_id = str(info["id"])
        return info

    async def get_balance(self) -> Dict[str, Any]:
        return await self._request("GET", "/core/v1/accounts/balance/")

    async def remote_user_id(self) -> str:
        """Marketplace user id, fetched from the self endpoint on first use."""
        if self._remote_user_id is None:
            await self.get_account_info()
        if self._remote_user_id is None:
            raise UpstreamUnavailableError("Marketplace did not return a user id")
        return self._remote_user_id

    async def get_chats(self, limit: int = 50, offset: int = 0, unread_only: bool = False) -> Dict[str, Any]:
        user_id = await self.remote_user_id()
        params = {"limit": limit, "offset": offset}
        if unread_only:
            params["unread_only"] = "true"
        return await self._request(
            "GET", f"/messenger/v2/accounts/{user_id}/chats", params=params
        )

    async def get_messages(self, chat_id: str, limit: int = 100, offset: int = 0) -> Any:
        user_id = await self.remote_user_id()
        return await self._request(
            "GET",
            f"/messenger/v3/accounts/{user_id}/chats/{chat_id}/messages/",
            params={"limit": limit, "offset": offset},
        )

    async def send_message(self, chat_id: str, text: str) -> Dict[str, Any]:
        user_id = await self.remote_user_id()
        result = await self._request(
            "POST",
            f"/messenger/v1/accounts/{user_id}/chats/{chat_id}/messages",
            json={"type": "text", "message": {"text": text}},
        )
        logger.info(
            "Message sent",
            extra={"tenant_id": self.tenant_id, "chat_id": chat_id}
        )
        return result

    async def mark_as_read(self, chat_id: str) -> None:
        user_id = await self.remote_user_id()
        await self._request(
            "POST", f"/messenger/v1/accounts/{user_id}/chats/{chat_id}/read", json={}
        )

    async def set_online(self) -> None:
        """Mark the account online in the messenger."""
        user_id = await self.remote_user_id()
        await self._request(
            "POST", f"/messenger/v2/accounts/{user_id}/status/online", json={}
        )

    async def register_webhook(self, webhook_url: str) -> bool:
        result = await self._request(
            "POST", "/messenger/v3/webhook", json={"url": webhook_url}
        )
        success = result.get("ok") is True
        if success:
            logger.info("Webhook registered", extra={"tenant_id": self.tenant_id})
        else:
            logger.warning(
                "Webhook registration not acknowledged",
                extra={"tenant_id": self.tenant_id}
            )
        return success

    async def health_check(self) -> bool:
        """True if a token can be obtained. Never raises for connectivity."""
        try:
            await self.token_manager.get_access_token()
            return True
        except AppError as e:
            logger.warning(
                "Health check failed",
                extra={"tenant_id": self.tenant_id, "error_code": e.code}
            )
            return False

    async def proxy_check(self) -> bool:
        """
        True if the marketplace is reachable through the configured proxy.

        Any HTTP answer proves the route works; only transport failures
        count as a broken proxy. Accounts without a proxy always pass.
        """
        if self.proxy is None:
            return True
        if self._closed or self._http.is_closed:
            return False
        try:
            await self._http.get("/core/v1/accounts/self", timeout=PROXY_CHECK_TIMEOUT_SECONDS)
            return True
        except httpx.RequestError as e:
            logger.error(
                "Proxy check failed",
                extra={
                    "tenant_id": self.tenant_id,
                    "proxy": self.proxy.redacted_url,
                    "error_type": type(e).__name__,
                }
            )
            return False
