"""
Script to check an identity server before configuring it.

Prints the identity server advertised by the homeserver, then checks that
the given (or advertised) server supports identity API v2.

Usage:
    python scripts/check_identity_server.py [identity-server-url]
"""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path to import from project
sys.path.insert(0, str(Path(__file__).parent.parent))

from services.identity import IdentityServiceError, create_identity_service


async def check(url: str | None) -> bool:
    service = create_identity_service()
    try:
        print("Looking up the homeserver's well-known...")
        try:
            default = await service.get_default_identity_server()
            print(f"✓ Advertised identity server: {default or '(none)'}")
        except IdentityServiceError as e:
            default = None
            print(f"⚠️  Well-known lookup failed: {e}")

        url = url or default
        if not url:
            print("❌ No identity server to check")
            return False

        print(f"\nChecking {url}...")
        try:
            await service.is_valid_identity_server(url)
        except IdentityServiceError as e:
            print(f"❌ {url} cannot be used: {e}")
            return False

        print(f"✓ {url} supports identity API v2")
        return True
    finally:
        await service.aclose()


def main():
    url = sys.argv[1] if len(sys.argv) > 1 else None
    ok = asyncio.run(check(url))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
