"""
Authenticated HTTP session against the Showcase APIs.

The access token is sent as a bearer header. When a request comes back 401
the session refreshes once, through the HttpOnly refresh cookie held in the
httpx cookie jar, and replays the request with the new token. Concurrent 401s
share a single refresh call.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx

from client.store import CredentialStore
from config import CLIENT_TIMEOUT, REFRESH_COOKIE_NAME

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    INIT = "init"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    EXPIRED = "expired"


class ApiError(Exception):
    """Exception raised when an API call returns a non-2xx response."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"API error {status_code}: {message}")


class SessionExpiredError(ApiError):
    """The refresh token was rejected; the user has to sign in again."""

    def __init__(self, message: str = "Session expired"):
        super().__init__(401, message)


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        detail = None
    if isinstance(detail, list):
        # FastAPI validation errors
        detail = "; ".join(str(item.get("msg", item)) for item in detail if isinstance(item, dict)) or None
    return str(detail) if detail else f"HTTP {response.status_code}"


class ApiSession:
    """HTTP session with bearer auth and transparent refresh."""

    def __init__(
        self,
        base_url: str,
        store: Optional[CredentialStore] = None,
        refresh_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_expired: Optional[Callable[[], Any]] = None,
        timeout: float = CLIENT_TIMEOUT,
    ):
        """
        Args:
            base_url: API requests are relative to this URL
            store: Where the access token, user and refresh cookie are kept
            refresh_url: Base URL of the API serving /api/auth/* (defaults to base_url)
            transport: Optional httpx transport, used by tests
            on_expired: Called when the session can no longer be refreshed
        """
        self.base_url = base_url.rstrip("/")
        self.refresh_url = (refresh_url or base_url).rstrip("/")
        self.store = store if store is not None else CredentialStore()
        self.on_expired = on_expired
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._refresh_future: Optional[asyncio.Future] = None
        self.state = SessionState.AUTHENTICATED if self.store.access_token else SessionState.INIT

    async def __aenter__(self) -> "ApiSession":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client, seeding the cookie jar from the store."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            if self.store.refresh_cookie:
                self._client.cookies.set(REFRESH_COOKIE_NAME, self.store.refresh_cookie)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str, base: Optional[str] = None) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{base or self.base_url}{path}"

    def _sync_refresh_cookie(self, response: httpx.Response) -> None:
        """
        Mirror the refresh cookie set (or cleared) by an auth response.

        Responses that do not touch the cookie leave the jar and the store
        alone. The jar keeps a single host-independent copy so the same
        session can talk to the public and admin APIs.
        """
        prefix = f"{REFRESH_COOKIE_NAME}="
        if not any(header.startswith(prefix) for header in response.headers.get_list("set-cookie")):
            return
        value = response.cookies.get(REFRESH_COOKIE_NAME)
        self._client.cookies.delete(REFRESH_COOKIE_NAME)
        if value:
            self._client.cookies.set(REFRESH_COOKIE_NAME, value)
        self.store.refresh_cookie = value or None

    async def _expire(self, reason: str) -> None:
        logger.info(f"Session expired: {reason}")
        self.store.clear()
        if self._client is not None:
            self._client.cookies.delete(REFRESH_COOKIE_NAME)
        self.state = SessionState.EXPIRED
        if self.on_expired is not None:
            result = self.on_expired()
            if asyncio.iscoroutine(result):
                await result

    def _restore_state(self) -> None:
        self.state = SessionState.AUTHENTICATED if self.store.access_token else SessionState.INIT

    async def _perform_refresh(self) -> str:
        client = await self._get_client()
        try:
            response = await client.post(f"{self.refresh_url}/api/auth/refresh")
        except httpx.RequestError as e:
            self._restore_state()
            raise ApiError(0, f"Connection error: {e}")

        self._sync_refresh_cookie(response)
        if response.status_code in (401, 403):
            await self._expire(_error_detail(response))
            raise SessionExpiredError()
        if response.status_code != 200:
            # Rate limited or server trouble; the refresh cookie may still be good
            logger.warning(f"Refresh failed with status {response.status_code}, keeping credentials")
            self._restore_state()
            raise ApiError(response.status_code, _error_detail(response))

        data = response.json()
        self.store.save(data["access_token"], data.get("user"), self.store.refresh_cookie)
        self.state = SessionState.AUTHENTICATED
        return data["access_token"]

    async def refresh(self, sent_token: Optional[str] = None) -> str:
        """
        Obtain a new access token through the refresh cookie.

        Only one refresh call is in flight at a time; concurrent callers wait
        for it. A caller whose failed request carried an older token than the
        current one gets the current token without another refresh.
        """
        current = self.store.access_token
        if sent_token is not None and current and sent_token != current:
            return current

        if self._refresh_future is not None:
            return await asyncio.shield(self._refresh_future)

        future = asyncio.get_running_loop().create_future()
        self._refresh_future = future
        self.state = SessionState.REFRESHING
        try:
            token = await self._perform_refresh()
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved: there may be no other waiter
            future.exception()
            raise
        else:
            future.set_result(token)
            return token
        finally:
            if not future.done():
                future.cancel()
            self._refresh_future = None

    async def request(self, method: str, path: str, allow_refresh: bool = True, **kwargs) -> httpx.Response:
        """
        Send a request with the current bearer token.

        A 401 triggers one refresh and one replay. Whatever the replay returns
        is handed back as is.
        """
        client = await self._get_client()
        url = self._url(path)
        headers = dict(kwargs.pop("headers", None) or {})

        token = self.store.access_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as e:
            raise ApiError(0, f"Connection error: {e}")

        if response.status_code != 401 or not allow_refresh:
            return response

        new_token = await self.refresh(sent_token=token)
        headers["Authorization"] = f"Bearer {new_token}"
        try:
            return await client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as e:
            raise ApiError(0, f"Connection error: {e}")

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.is_success:
            raise ApiError(response.status_code, _error_detail(response))
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise ApiError(response.status_code, "Invalid JSON response from server")

    async def get_json(self, path: str, **kwargs) -> Any:
        return self._json(await self.request("GET", path, **kwargs))

    async def post_json(self, path: str, json: Any = None, **kwargs) -> Any:
        return self._json(await self.request("POST", path, json=json, **kwargs))

    async def put_json(self, path: str, json: Any = None, **kwargs) -> Any:
        return self._json(await self.request("PUT", path, json=json, **kwargs))

    async def delete_json(self, path: str, **kwargs) -> Any:
        return self._json(await self.request("DELETE", path, **kwargs))

    # ============ Auth ============

    async def login(self, code: str) -> Dict[str, Any]:
        """Exchange an authorization code for a session. Returns the signed-in user."""
        client = await self._get_client()
        try:
            response = await client.post(f"{self.refresh_url}/api/auth/login", json={"code": code})
        except httpx.RequestError as e:
            raise ApiError(0, f"Connection error: {e}")
        data = self._json(response)

        self._sync_refresh_cookie(response)
        self.store.save(data["access_token"], data.get("user"), self.store.refresh_cookie)
        self.state = SessionState.AUTHENTICATED
        return data["user"]

    async def logout(self) -> None:
        """Revoke the refresh token on the server and forget all local credentials."""
        client = await self._get_client()
        try:
            response = await client.post(f"{self.refresh_url}/api/auth/logout")
            self._json(response)
        except httpx.RequestError as e:
            raise ApiError(0, f"Connection error: {e}")
        finally:
            self.store.clear()
            client.cookies.delete(REFRESH_COOKIE_NAME)
            self.state = SessionState.INIT

    async def me(self) -> Optional[Dict[str, Any]]:
        """The signed-in user, or None. A stale access token is refreshed first."""
        user = await self.get_json(f"{self.refresh_url}/api/auth/me")
        if user is None and self.store.refresh_cookie:
            try:
                await self.refresh()
            except SessionExpiredError:
                return None
            user = await self.get_json(f"{self.refresh_url}/api/auth/me")
        return user
