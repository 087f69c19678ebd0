"""
Startup script for deployment
Handles:
- Configuration sanity checks (homeserver credentials, store backend)
- Uvicorn server launch
"""

import os
import sys

from core.config import settings


def check_homeserver_credentials():
    """
    The identity server token is obtained through the homeserver's OpenID
    endpoint, so binding and lookups need a logged-in account.
    """
    missing = [
        name for name in ("MATRIX_USER_ID", "MATRIX_ACCESS_TOKEN")
        if not getattr(settings, name)
    ]

    if missing:
        print(f"⚠️  WARNING: {', '.join(missing)} not found in environment")
        print("⚠️  Identity server registration will fail until they are set!")
        return False

    print(f"✓ Homeserver account: {settings.MATRIX_USER_ID} on {settings.HOMESERVER_URL}")
    return True


def check_store_backend():
    """Pending bindings only survive restarts with the redis store"""
    if settings.IDENTITY_STORE == "redis":
        print(f"✓ Binding sessions persisted in Redis ({settings.REDIS_URL})")
        return True

    if settings.IDENTITY_STORE != "memory":
        print(f"❌ Unknown IDENTITY_STORE={settings.IDENTITY_STORE!r}, expected 'memory' or 'redis'")
        return False

    print("⚠️  Binding sessions kept in memory, they will be lost on restart")
    return True


def main():
    """Main startup sequence"""
    print("=" * 60)
    print("🚀 Identity Bridge - Deployment Startup")
    print("=" * 60)

    # Step 1: Homeserver account
    print("\n[1/3] Checking homeserver credentials...")
    check_homeserver_credentials()

    # Step 2: Persistence
    print("\n[2/3] Checking binding store...")
    if not check_store_backend():
        sys.exit(1)

    # Step 3: Launch uvicorn
    print("\n[3/3] Starting uvicorn server...")
    print("=" * 60)

    port = int(os.getenv("PORT", "8000"))

    # Import and run uvicorn
    import uvicorn

    try:
        uvicorn.run(
            "main:app",
            host="0.0.0.0",
            port=port,
            log_level="info",
            access_log=True
        )
    except KeyboardInterrupt:
        print("\n⏹️  Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
