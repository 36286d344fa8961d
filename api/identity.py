"""
External identity provider.

Login is an OAuth authorization-code exchange: the browser comes back from the
provider with a one-time code, which is traded for a provider access token and
then for the user's profile. Only the profile leaves this module.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from config import OAUTH_CLIENT_ID, OAUTH_CLIENT_SECRET, OAUTH_SERVER_URL, OAUTH_TIMEOUT

logger = logging.getLogger(__name__)


class IdentityProviderError(Exception):
    """
    Raised when the code exchange fails.

    status_code is 401 when the provider rejected the code and 503 when the
    provider is not configured or could not be reached.
    """

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class Identity:
    open_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    login_method: Optional[str] = None


async def exchange_code(
    code: str,
    server_url: str = OAUTH_SERVER_URL,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Identity:
    """Trade an authorization code for the signed-in user's identity."""
    if not server_url:
        raise IdentityProviderError(503, "Identity provider is not configured")

    async with httpx.AsyncClient(base_url=server_url, timeout=OAUTH_TIMEOUT, transport=transport) as client:
        try:
            token_response = await client.post(
                "/oauth/token",
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": OAUTH_CLIENT_ID,
                    "client_secret": OAUTH_CLIENT_SECRET,
                },
            )
            if token_response.status_code in (400, 401, 403):
                logger.info(f"Identity provider rejected authorization code ({token_response.status_code})")
                raise IdentityProviderError(401, "Invalid authorization code")
            token_response.raise_for_status()
            provider_token = token_response.json().get("access_token")
            if not provider_token:
                raise IdentityProviderError(401, "Invalid authorization code")

            profile_response = await client.get(
                "/oauth/userinfo",
                headers={"Authorization": f"Bearer {provider_token}"},
            )
            profile_response.raise_for_status()
            profile = profile_response.json()
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            logger.error(f"Identity provider unreachable: {e}")
            raise IdentityProviderError(503, "Identity provider unavailable")
        except httpx.HTTPStatusError as e:
            logger.error(f"Identity provider error: {e.response.status_code}")
            raise IdentityProviderError(503, "Identity provider unavailable")
        except ValueError as e:
            logger.error(f"Identity provider returned malformed JSON: {e}")
            raise IdentityProviderError(503, "Identity provider unavailable")

    open_id = profile.get("open_id") or profile.get("openId") or profile.get("sub")
    if not open_id:
        raise IdentityProviderError(503, "Identity provider returned no user id")

    return Identity(
        open_id=str(open_id),
        name=profile.get("name"),
        email=profile.get("email"),
        login_method=profile.get("login_method") or profile.get("loginMethod"),
    )
