"""Observers of identity server and binding changes"""

import asyncio
import logging
from typing import List, Optional

logger = logging.getLogger(__name__)


class IdentityServiceListener:
    """Override the hooks you care about; the defaults do nothing."""

    def on_identity_server_change(self, url: Optional[str]) -> None:
        pass

    def on_binding_state_change(self, threepid, state) -> None:
        pass


class ListenerRegistry:
    """
    Set of listeners owned by one IdentityService.

    Listeners are compared by identity. Notifications are queued on the
    running event loop so the notifier never waits on a listener.
    """

    def __init__(self):
        self._listeners: List[IdentityServiceListener] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def add(self, listener: IdentityServiceListener) -> None:
        if not any(existing is listener for existing in self._listeners):
            self._listeners.append(listener)

    def remove(self, listener: IdentityServiceListener) -> None:
        self._listeners = [existing for existing in self._listeners if existing is not listener]

    def clear(self) -> None:
        self._listeners = []

    def notify_server_change(self, url: Optional[str]) -> None:
        self._fan_out("on_identity_server_change", url)

    def notify_binding_state(self, threepid, state) -> None:
        self._fan_out("on_binding_state_change", threepid, state)

    def _fan_out(self, hook: str, *args) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for listener in list(self._listeners):
            if loop is not None:
                loop.call_soon(self._deliver, listener, hook, args)
            else:
                self._deliver(listener, hook, args)

    @staticmethod
    def _deliver(listener: IdentityServiceListener, hook: str, args: tuple) -> None:
        try:
            getattr(listener, hook)(*args)
        except Exception as e:
            logger.error(f"Listener {listener!r} failed in {hook}: {e}", exc_info=True)
