"""Identity Server Client Service

Binds third-party identifiers (email addresses, phone numbers) to a Matrix
account through an identity server, and looks up which users own them.

Usage:
    from services.identity import create_identity_service, Email

    service = create_identity_service()
    await service.start()
    await service.set_new_identity_server("vector.im")
    await service.start_bind_threepid(Email(value="alice@example.com"))
"""

from .service import (
    IdentityService,
    create_identity_service,
)

from .dispatcher import (
    Cancelable,
    RequestDispatcher,
    Result,
)

from .listeners import (
    IdentityServiceListener,
    ListenerRegistry,
)

from .store import (
    BindingStore,
    InMemoryBindingStore,
    RedisBindingStore,
)

from .models import (
    BindingSession,
    BindingState,
    Email,
    FoundThreePid,
    IdentityServerConfig,
    Phone,
    ServerStatus,
    SharedState,
    ThreePid,
    threepid_from_medium,
)

from .errors import (
    AlreadyBound,
    BindingStateError,
    BulkLookupUnsupported,
    Cancelled,
    IdentityServiceError,
    InvalidOrExpiredCode,
    InvalidServerUrl,
    InvalidThreePid,
    MalformedResponse,
    MatrixApiError,
    NoActiveSession,
    NoIdentityServerConfigured,
    SessionExpired,
    Unreachable,
    UnsupportedServerVersion,
)

__all__ = [
    # Service
    "IdentityService",
    "create_identity_service",
    # Dispatch
    "Cancelable",
    "RequestDispatcher",
    "Result",
    # Listeners
    "IdentityServiceListener",
    "ListenerRegistry",
    # Persistence
    "BindingStore",
    "InMemoryBindingStore",
    "RedisBindingStore",
    # Models
    "BindingSession",
    "BindingState",
    "Email",
    "FoundThreePid",
    "IdentityServerConfig",
    "Phone",
    "ServerStatus",
    "SharedState",
    "ThreePid",
    "threepid_from_medium",
    # Errors
    "AlreadyBound",
    "BindingStateError",
    "BulkLookupUnsupported",
    "Cancelled",
    "IdentityServiceError",
    "InvalidOrExpiredCode",
    "InvalidServerUrl",
    "InvalidThreePid",
    "MalformedResponse",
    "MatrixApiError",
    "NoActiveSession",
    "NoIdentityServerConfigured",
    "SessionExpired",
    "Unreachable",
    "UnsupportedServerVersion",
]
