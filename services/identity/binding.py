"""
ThreePid binding lifecycle.

    NONE -> REQUESTED -> CODE_SENT -> SUBMITTED -> FINALIZED
                 |           |            |
                 +-----------+------------+--> CANCELLED (FAILED from SUBMITTED)

Validation (proving ownership to the identity server) and association
(asking the homeserver to bind) are separate steps so a failed finalize
can be retried without entering a new code.
"""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Tuple

from .client import HomeserverClient, IdentityServerClient, id_server_host
from .errors import (
    AlreadyBound,
    BindingStateError,
    IdentityServiceError,
    InvalidOrExpiredCode,
    MatrixApiError,
    NoActiveSession,
    SessionExpired,
)
from .listeners import ListenerRegistry
from .locator import ServerLocator
from .models import BindingSession, BindingState
from .store import BindingStore

logger = logging.getLogger(__name__)

# Error codes meaning the validation session no longer exists server-side
EXPIRED_SESSION_ERRCODES = ("M_SESSION_EXPIRED", "M_NO_VALID_SESSION")

# Error codes submitToken uses for a wrong or malformed code
INVALID_CODE_ERRCODES = ("M_INVALID_PARAM", "M_UNKNOWN")


def generate_client_secret() -> str:
    return secrets.token_urlsafe(24)


class ThreePidBindingTracker:
    """One live BindingSession per ThreePid, mutated under a per-ThreePid lock."""

    def __init__(
        self,
        locator: ServerLocator,
        identity: IdentityServerClient,
        homeserver: HomeserverClient,
        store: BindingStore,
        registry: ListenerRegistry,
    ):
        self._locator = locator
        self._identity = identity
        self._homeserver = homeserver
        self._store = store
        self._registry = registry
        self._sessions: Dict[object, BindingSession] = {}
        self._locks: Dict[object, asyncio.Lock] = {}
        self._lock_users: Dict[object, int] = {}

    @asynccontextmanager
    async def _serialized(self, threepid):
        """Hold the ThreePid's lock. The lock is discarded once nobody holds or awaits it."""
        lock = self._locks.get(threepid)
        if lock is None:
            lock = self._locks[threepid] = asyncio.Lock()
        self._lock_users[threepid] = self._lock_users.get(threepid, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[threepid] -= 1
            if not self._lock_users[threepid]:
                del self._lock_users[threepid]
                del self._locks[threepid]

    # Read accessors

    def session_of(self, threepid) -> Optional[BindingSession]:
        return self._sessions.get(threepid)

    def state_of(self, threepid) -> BindingState:
        session = self._sessions.get(threepid)
        return session.state if session else BindingState.NONE

    def has_live_session(self, threepid) -> bool:
        session = self._sessions.get(threepid)
        return session is not None and not session.state.is_terminal

    def pending_sessions(self) -> List[BindingSession]:
        return list(self._sessions.values())

    async def restore(self) -> None:
        """Reload sessions persisted before a restart"""
        for session in await self._store.load_sessions():
            if session.state.is_terminal:
                await self._store.delete_session(session.threepid)
                continue
            self._sessions[session.threepid] = session
        if self._sessions:
            logger.info(f"Restored {len(self._sessions)} pending binding session(s)")

    # Internal transitions

    def _require_session(self, threepid, operation: str, allowed: Tuple[BindingState, ...]) -> BindingSession:
        session = self._sessions.get(threepid)
        if session is None:
            raise NoActiveSession(f"No binding in progress for {threepid.medium} {threepid.value}")
        if session.state not in allowed:
            raise BindingStateError(operation, session.state, allowed)
        return session

    async def _transition(self, session: BindingSession, state: BindingState, **changes) -> None:
        """Persist the new state first; the live session only changes once the store accepted it"""
        changes["state"] = state
        await self._store.save_session(session.model_copy(update=changes))
        for field, value in changes.items():
            setattr(session, field, value)
        self._registry.notify_binding_state(session.threepid, state)

    async def _retire(self, session: BindingSession, state: BindingState) -> None:
        """Move a session to a terminal state and stop tracking it"""
        await self._store.delete_session(session.threepid)
        session.state = state
        if self._sessions.get(session.threepid) is session:
            del self._sessions[session.threepid]
        self._registry.notify_binding_state(session.threepid, state)

    def _drop(self, session: BindingSession, state: BindingState = BindingState.NONE) -> None:
        """
        Forget a session that never reached CODE_SENT.

        Nothing was persisted yet. A failed request goes back to NONE, an
        aborted one ends CANCELLED.
        """
        if state.is_terminal:
            session.state = state
        if self._sessions.get(session.threepid) is session:
            del self._sessions[session.threepid]
        self._registry.notify_binding_state(session.threepid, state)

    # Lifecycle operations

    async def start_bind(self, threepid) -> None:
        """
        Ask the identity server to send a validation code.

        An existing session for the same ThreePid is cancelled first.

        Raises:
            AlreadyBound: the ThreePid is in use by another account
            NoIdentityServerConfigured: no identity server set
        """
        config = self._locator.require_config()
        async with self._serialized(threepid):
            previous = self._sessions.get(threepid)
            if previous is not None:
                logger.info(f"Superseding {previous.state.value} binding of {threepid.medium} {threepid.value}")
                await self._retire(previous, BindingState.CANCELLED)

            session = BindingSession(threepid=threepid, client_secret=generate_client_secret())
            self._sessions[threepid] = session
            self._registry.notify_binding_state(threepid, BindingState.REQUESTED)

            try:
                sid = await self._identity.request_token(
                    config.url, config.access_token, threepid, session.client_secret, session.send_attempt
                )
            except MatrixApiError as e:
                self._drop(session)
                if e.errcode == "M_THREEPID_IN_USE":
                    raise AlreadyBound(f"{threepid.value} is already bound to another account") from e
                raise
            except IdentityServiceError:
                self._drop(session)
                raise
            except asyncio.CancelledError:
                self._drop(session, BindingState.CANCELLED)
                logger.info(f"Binding of {threepid.medium} {threepid.value} cancelled before the code was sent")
                raise

            await self._transition(session, BindingState.CODE_SENT, sid=sid)
            logger.info(f"Validation code requested for {threepid.medium} {threepid.value} (sid {sid})")

    async def send_again(self, threepid) -> None:
        """Request a new validation code within the same session"""
        config = self._locator.require_config()
        async with self._serialized(threepid):
            session = self._require_session(
                threepid, "send_again_validation_code", (BindingState.CODE_SENT, BindingState.SUBMITTED)
            )
            send_attempt = session.send_attempt + 1
            try:
                sid = await self._identity.request_token(
                    config.url, config.access_token, threepid, session.client_secret, send_attempt
                )
            except MatrixApiError as e:
                if e.errcode == "M_THREEPID_IN_USE":
                    raise AlreadyBound(f"{threepid.value} is already bound to another account") from e
                raise

            await self._transition(
                session,
                BindingState.CODE_SENT,
                sid=sid,
                send_attempt=send_attempt,
                retry_count=session.retry_count + 1,
            )
            logger.info(f"Validation code re-sent for {threepid.medium} {threepid.value} (attempt {send_attempt})")

    async def submit_code(self, threepid, code: str) -> None:
        """
        Submit the code the user received.

        On rejection the session stays CODE_SENT so the user can retry or
        ask for a new code.
        """
        config = self._locator.require_config()
        async with self._serialized(threepid):
            session = self._require_session(threepid, "submit_validation_token", (BindingState.CODE_SENT,))
            try:
                accepted = await self._identity.submit_token(
                    config.url, config.access_token, threepid, session.client_secret, session.sid, code
                )
            except MatrixApiError as e:
                if e.errcode in EXPIRED_SESSION_ERRCODES:
                    raise InvalidOrExpiredCode("expired-session", e.message) from e
                if e.errcode in INVALID_CODE_ERRCODES:
                    raise InvalidOrExpiredCode("invalid-code", e.message) from e
                raise

            if not accepted:
                raise InvalidOrExpiredCode("invalid-code", "The identity server rejected the code")

            await self._transition(session, BindingState.SUBMITTED)
            logger.info(f"Validation code accepted for {threepid.medium} {threepid.value}")

    async def finalize(self, threepid) -> None:
        """
        Bind the validated ThreePid to the account on the homeserver.

        Failures keep the session SUBMITTED (retryable) except an expired
        session, which ends in FAILED.
        """
        config = self._locator.require_config()
        async with self._serialized(threepid):
            session = self._require_session(threepid, "finalize_bind_threepid", (BindingState.SUBMITTED,))
            try:
                await self._homeserver.bind_threepid(
                    id_server_host(config.url), config.access_token, session.sid, session.client_secret
                )
            except MatrixApiError as e:
                if e.errcode in EXPIRED_SESSION_ERRCODES:
                    await self._retire(session, BindingState.FAILED)
                    logger.warning(f"Binding of {threepid.medium} {threepid.value} failed: session expired")
                    raise SessionExpired(e.message or "Validation session expired") from e
                raise

            await self._retire(session, BindingState.FINALIZED)
            logger.info(f"Bound {threepid.medium} {threepid.value} to the account")

    async def cancel(self, threepid) -> None:
        """Abandon the binding. No session is not an error."""
        async with self._serialized(threepid):
            session = self._sessions.get(threepid)
            if session is None:
                return
            await self._retire(session, BindingState.CANCELLED)
            logger.info(f"Binding of {threepid.medium} {threepid.value} cancelled")

    async def unbind(self, threepid) -> str:
        """Remove the association on the homeserver; binding sessions are left alone"""
        config = self._locator.require_config()
        result = await self._homeserver.unbind_threepid(id_server_host(config.url), threepid)
        logger.info(f"Unbound {threepid.medium} {threepid.value} ({result})")
        return result
