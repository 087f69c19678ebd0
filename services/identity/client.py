"""
HTTP clients for the identity server (API v2) and the homeserver (client API r0).
Transport failures surface as Unreachable, Matrix error bodies as MatrixApiError.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlsplit

import httpx

from .errors import MalformedResponse, MatrixApiError, Unreachable
from .models import Email, Phone

logger = logging.getLogger(__name__)

IDENTITY_API_PREFIX = "/_matrix/identity/v2"
CLIENT_API_PREFIX = "/_matrix/client/r0"


def id_server_host(url: str) -> str:
    """The identity server as the homeserver expects it: host[:port], no scheme"""
    return urlsplit(url).netloc or url


class MatrixHttpClient:
    """Shared request/response handling for Matrix servers."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def _request(
        self,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self.client.request(method, url, json=json, headers=headers)
        except httpx.RequestError as e:
            logger.warning(f"{method} {url} failed: {e!r}")
            raise Unreachable(f"{method} {url} failed: {e}") from e

        if response.is_success:
            try:
                body = response.json()
            except ValueError as e:
                raise MalformedResponse(f"{method} {url} returned non-JSON body") from e
            if not isinstance(body, dict):
                raise MalformedResponse(f"{method} {url} returned {type(body).__name__}, expected object")
            return body

        errcode, message = None, response.text[:200]
        try:
            body = response.json()
            if isinstance(body, dict):
                errcode = body.get("errcode")
                message = body.get("error", message)
        except ValueError:
            pass
        logger.info(f"{method} {url} -> {response.status_code} {errcode}")
        raise MatrixApiError(response.status_code, errcode, message)


class IdentityServerClient(MatrixHttpClient):
    """Identity server API v2. Every call takes the server url explicitly."""

    async def ping(self, base_url: str) -> Dict[str, Any]:
        """Status check: succeeds only if the v2 API is served"""
        return await self._request("GET", f"{base_url}{IDENTITY_API_PREFIX}")

    async def register(self, base_url: str, openid_token: Dict[str, Any]) -> str:
        """Exchange a homeserver OpenID token for an identity server access token"""
        body = await self._request("POST", f"{base_url}{IDENTITY_API_PREFIX}/account/register", json=openid_token)
        token = body.get("token") or body.get("access_token")
        if not token:
            raise MalformedResponse("account/register response has no token")
        return token

    async def logout(self, base_url: str, token: str) -> None:
        await self._request("POST", f"{base_url}{IDENTITY_API_PREFIX}/account/logout", json={}, token=token)

    async def request_token(
        self,
        base_url: str,
        token: Optional[str],
        threepid,
        client_secret: str,
        send_attempt: int,
    ) -> str:
        """Ask the identity server to send a validation code. Returns the session id (sid)."""
        payload: Dict[str, Any] = {"client_secret": client_secret, "send_attempt": send_attempt}
        if isinstance(threepid, Email):
            payload["email"] = threepid.value
        elif isinstance(threepid, Phone):
            # International format, so the country hint is not used for parsing
            payload["phone_number"] = f"+{threepid.value}"
            payload["country"] = ""
        body = await self._request(
            "POST",
            f"{base_url}{IDENTITY_API_PREFIX}/validate/{threepid.medium}/requestToken",
            json=payload,
            token=token,
        )
        sid = body.get("sid")
        if not sid:
            raise MalformedResponse("requestToken response has no sid")
        return sid

    async def submit_token(
        self,
        base_url: str,
        token: Optional[str],
        threepid,
        client_secret: str,
        sid: str,
        code: str,
    ) -> bool:
        body = await self._request(
            "POST",
            f"{base_url}{IDENTITY_API_PREFIX}/validate/{threepid.medium}/submitToken",
            json={"client_secret": client_secret, "sid": sid, "token": code},
            token=token,
        )
        return bool(body.get("success"))

    async def hash_details(self, base_url: str, token: Optional[str]) -> Dict[str, Any]:
        return await self._request("GET", f"{base_url}{IDENTITY_API_PREFIX}/hash_details", token=token)

    async def lookup(
        self,
        base_url: str,
        token: Optional[str],
        algorithm: str,
        pepper: str,
        addresses: List[str],
    ) -> Dict[str, str]:
        body = await self._request(
            "POST",
            f"{base_url}{IDENTITY_API_PREFIX}/lookup",
            json={"algorithm": algorithm, "pepper": pepper, "addresses": addresses},
            token=token,
        )
        mappings = body.get("mappings", {})
        if not isinstance(mappings, dict):
            raise MalformedResponse("lookup response mappings is not an object")
        return mappings


class HomeserverClient(MatrixHttpClient):
    """The calls this service needs from the user's homeserver."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, user_id: str, access_token: str):
        super().__init__(client)
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.access_token = access_token

    async def well_known(self) -> Optional[Dict[str, Any]]:
        """Client well-known document, or None when the homeserver has none"""
        try:
            return await self._request("GET", f"{self.base_url}/.well-known/matrix/client")
        except MatrixApiError as e:
            if e.status_code == 404:
                return None
            raise

    async def request_openid_token(self) -> Dict[str, Any]:
        user = quote(self.user_id, safe="")
        return await self._request(
            "POST",
            f"{self.base_url}{CLIENT_API_PREFIX}/user/{user}/openid/request_token",
            json={},
            token=self.access_token,
        )

    async def bind_threepid(self, id_server: str, id_access_token: Optional[str], sid: str, client_secret: str) -> None:
        """Associate a validated ThreePid session with the account"""
        payload = {"id_server": id_server, "sid": sid, "client_secret": client_secret}
        if id_access_token:
            payload["id_access_token"] = id_access_token
        await self._request(
            "POST",
            f"{self.base_url}{CLIENT_API_PREFIX}/account/3pid/bind",
            json=payload,
            token=self.access_token,
        )

    async def unbind_threepid(self, id_server: str, threepid) -> str:
        """Returns the id_server_unbind_result reported by the homeserver"""
        body = await self._request(
            "POST",
            f"{self.base_url}{CLIENT_API_PREFIX}/account/3pid/unbind",
            json={"id_server": id_server, "medium": threepid.medium, "address": threepid.value},
            token=self.access_token,
        )
        return body.get("id_server_unbind_result", "no-support")
