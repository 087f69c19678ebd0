"""IdentityService: the public surface over the identity components"""

import logging
from typing import Iterable, Optional

import httpx

from core.config import settings
from .binding import ThreePidBindingTracker
from .client import HomeserverClient, IdentityServerClient
from .dispatcher import Callback, Cancelable, RequestDispatcher
from .listeners import IdentityServiceListener, ListenerRegistry
from .locator import ServerLocator
from .lookup import LookupClient
from .share_status import ShareStatusAggregator
from .store import BindingStore, InMemoryBindingStore, RedisBindingStore

logger = logging.getLogger(__name__)


class IdentityService:
    """
    Identity server configuration plus the ThreePid binding and lookup services.

    Every operation returns a Cancelable immediately. Pass a callback to get
    the Result, or await the handle.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        homeserver_url: str,
        user_id: str,
        access_token: str,
        store: Optional[BindingStore] = None,
        registry: Optional[ListenerRegistry] = None,
    ):
        self._http = http
        self.registry = registry if registry is not None else ListenerRegistry()
        self.store = store if store is not None else InMemoryBindingStore()
        self.dispatcher = RequestDispatcher()

        self.identity = IdentityServerClient(http)
        self.homeserver = HomeserverClient(http, homeserver_url, user_id, access_token)

        self.locator = ServerLocator(self.identity, self.homeserver, self.registry, self.store)
        self.tracker = ThreePidBindingTracker(
            self.locator, self.identity, self.homeserver, self.store, self.registry
        )
        self.lookup = LookupClient(self.locator, self.identity)
        self.share_status = ShareStatusAggregator(self.lookup, self.tracker)

    async def start(self) -> None:
        """Restore the persisted identity server and pending bindings"""
        await self.locator.restore()
        await self.tracker.restore()

    async def aclose(self) -> None:
        await self.dispatcher.aclose()
        self.registry.clear()
        await self._http.aclose()

    # Identity server

    def get_default_identity_server(self, callback: Optional[Callback] = None) -> Cancelable:
        return self.dispatcher.dispatch(self.locator.get_default_identity_server(), callback)

    def get_current_identity_server(self) -> Optional[str]:
        return self.locator.get_current_identity_server()

    def is_valid_identity_server(self, url: str, callback: Optional[Callback] = None) -> Cancelable:
        return self.dispatcher.dispatch(self.locator.is_valid_identity_server(url), callback)

    def set_new_identity_server(self, url: Optional[str], callback: Optional[Callback] = None) -> Cancelable:
        return self.dispatcher.dispatch(self.locator.set_new_identity_server(url), callback)

    # Binding lifecycle

    def start_bind_threepid(self, threepid, callback: Optional[Callback] = None) -> Cancelable:
        # A new start supersedes whatever is still in flight for this ThreePid
        self.dispatcher.cancel_key(threepid)
        return self.dispatcher.dispatch(self.tracker.start_bind(threepid), callback, key=threepid)

    def cancel_bind_threepid(self, threepid, callback: Optional[Callback] = None) -> Cancelable:
        self.dispatcher.cancel_key(threepid)
        return self.dispatcher.dispatch(self.tracker.cancel(threepid), callback, key=threepid)

    def send_again_validation_code(self, threepid, callback: Optional[Callback] = None) -> Cancelable:
        return self.dispatcher.dispatch(self.tracker.send_again(threepid), callback, key=threepid)

    def submit_validation_token(self, threepid, code: str, callback: Optional[Callback] = None) -> Cancelable:
        return self.dispatcher.dispatch(self.tracker.submit_code(threepid, code), callback, key=threepid)

    def finalize_bind_threepid(self, threepid, callback: Optional[Callback] = None) -> Cancelable:
        return self.dispatcher.dispatch(self.tracker.finalize(threepid), callback, key=threepid)

    def unbind_threepid(self, threepid, callback: Optional[Callback] = None) -> Cancelable:
        return self.dispatcher.dispatch(self.tracker.unbind(threepid), callback)

    # Lookup

    def look_up(self, threepids: Iterable, callback: Optional[Callback] = None) -> Cancelable:
        return self.dispatcher.dispatch(self.lookup.look_up(list(threepids)), callback)

    def get_share_status(self, threepids: Iterable, callback: Optional[Callback] = None) -> Cancelable:
        return self.dispatcher.dispatch(self.share_status.get_share_status(list(threepids)), callback)

    # Listeners

    def add_listener(self, listener: IdentityServiceListener) -> None:
        self.registry.add(listener)

    def remove_listener(self, listener: IdentityServiceListener) -> None:
        self.registry.remove(listener)


def create_identity_service() -> IdentityService:
    """Build an IdentityService from settings"""
    http = httpx.AsyncClient(timeout=settings.IDENTITY_HTTP_TIMEOUT)
    if settings.IDENTITY_STORE == "redis":
        store = RedisBindingStore(ttl=settings.IDENTITY_BINDING_TTL)
    else:
        store = InMemoryBindingStore()
    logger.info(f"Identity service for {settings.MATRIX_USER_ID or 'anonymous'} on {settings.HOMESERVER_URL}")
    return IdentityService(
        http,
        settings.HOMESERVER_URL,
        settings.MATRIX_USER_ID,
        settings.MATRIX_ACCESS_TOKEN,
        store=store,
    )
