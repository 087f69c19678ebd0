"""Discovery, validation and selection of the identity server"""

import asyncio
import logging
from typing import Optional

from .client import HomeserverClient, IdentityServerClient
from .errors import (
    IdentityServiceError,
    InvalidServerUrl,
    MalformedResponse,
    MatrixApiError,
    NoIdentityServerConfigured,
    Unreachable,
    UnsupportedServerVersion,
)
from .listeners import ListenerRegistry
from .models import IdentityServerConfig, ServerStatus
from .store import BindingStore

logger = logging.getLogger(__name__)


def normalize_server_url(url: str) -> str:
    """Trim, drop trailing slashes and default the scheme to https"""
    candidate = url.strip().rstrip("/")
    if not candidate:
        raise InvalidServerUrl("Identity server url must not be empty")
    if not candidate.startswith(("http://", "https://")):
        candidate = f"https://{candidate}"
    return candidate


class ServerLocator:
    """
    Owns the IdentityServerConfig.

    The config is immutable and replaced as a whole, so a reader holding a
    snapshot never sees a half-applied change. Writers are serialized.
    """

    def __init__(
        self,
        identity: IdentityServerClient,
        homeserver: HomeserverClient,
        registry: ListenerRegistry,
        store: BindingStore,
    ):
        self._identity = identity
        self._homeserver = homeserver
        self._registry = registry
        self._store = store
        self._config = IdentityServerConfig()
        self._write_lock = asyncio.Lock()

    @property
    def config(self) -> IdentityServerConfig:
        return self._config

    def get_current_identity_server(self) -> Optional[str]:
        return self._config.url

    def require_config(self) -> IdentityServerConfig:
        """Snapshot of the config, or NoIdentityServerConfigured"""
        config = self._config
        if config.url is None:
            raise NoIdentityServerConfigured("No identity server configured")
        return config

    async def restore(self) -> None:
        config = await self._store.load_server_config()
        if config is not None:
            self._config = config
            logger.info(f"Restored identity server {config.url}")

    async def get_default_identity_server(self) -> Optional[str]:
        """Identity server advertised by the homeserver's well-known, if any"""
        document = await self._homeserver.well_known()
        url = None
        if document:
            identity_server = document.get("m.identity_server")
            if isinstance(identity_server, dict):
                url = identity_server.get("base_url")
        if not isinstance(url, str) or not url.strip():
            if url is not None:
                logger.warning(f"Ignoring unusable identity server in well-known: {url!r}")
            return None
        url = normalize_server_url(url)
        if url != self._config.default_url:
            self._config = self._config.model_copy(update={"default_url": url})
        return url

    async def is_valid_identity_server(self, url: str) -> None:
        """
        Succeeds only if the server speaks identity API v2.

        Raises:
            UnsupportedServerVersion: the v2 endpoints are not served
            Unreachable: transport failure or server error
            MalformedResponse: anything else unexpected
        """
        candidate = normalize_server_url(url)
        try:
            await self._identity.ping(candidate)
        except Unreachable:
            self._mark_status(candidate, ServerStatus.UNREACHABLE)
            raise
        except MatrixApiError as e:
            if e.status_code in (404, 405):
                self._mark_status(candidate, ServerStatus.INVALID_VERSION)
                raise UnsupportedServerVersion(f"{candidate} does not support identity API v2") from e
            if e.status_code >= 500:
                self._mark_status(candidate, ServerStatus.UNREACHABLE)
                raise Unreachable(f"{candidate} answered {e.status_code}") from e
            raise MalformedResponse(f"{candidate} status check failed: {e}") from e
        self._mark_status(candidate, ServerStatus.VALID)

    def _mark_status(self, url: str, status: ServerStatus) -> None:
        # Only the configured server's status is tracked
        if self._config.url == url and self._config.status != status:
            self._config = self._config.model_copy(update={"status": status})

    async def set_new_identity_server(self, url: Optional[str]) -> Optional[str]:
        """
        Switch to a new identity server, or disconnect when url is None.

        The config only changes once the new server is validated and an
        access token was obtained. Returns the normalized url.
        """
        async with self._write_lock:
            current = self._config

            if url is None:
                if current.url is None:
                    return None
                await self._logout_quietly(current)
                cleared = IdentityServerConfig(default_url=self._config.default_url)
                await self._store.save_server_config(cleared)
                self._config = cleared
                logger.info(f"Disconnected from identity server {current.url}")
                self._registry.notify_server_change(None)
                return None

            candidate = normalize_server_url(url)
            if candidate == current.url:
                return candidate

            await self.is_valid_identity_server(candidate)
            token = await self._obtain_access_token(candidate)

            if current.url is not None:
                await self._logout_quietly(current)

            # default_url may have been rediscovered while the new server was checked
            config = IdentityServerConfig(
                url=candidate,
                default_url=self._config.default_url,
                status=ServerStatus.VALID,
                access_token=token,
            )
            await self._store.save_server_config(config)
            self._config = config
            logger.info(f"Identity server set to {candidate}")
            self._registry.notify_server_change(candidate)
            return candidate

    async def _obtain_access_token(self, url: str) -> str:
        openid_token = await self._homeserver.request_openid_token()
        try:
            return await self._identity.register(url, openid_token)
        except MatrixApiError as e:
            if e.status_code == 404:
                raise UnsupportedServerVersion(f"{url} does not support v2 account registration") from e
            raise

    async def _logout_quietly(self, config: IdentityServerConfig) -> None:
        if not config.url or not config.access_token:
            return
        try:
            await self._identity.logout(config.url, config.access_token)
        except IdentityServiceError as e:
            logger.warning(f"Logout from identity server {config.url} failed: {e}")
