"""Hashed bulk lookup of ThreePids (identity API v2)"""

import base64
import hashlib
import logging
from typing import Iterable, List

from .client import IdentityServerClient
from .errors import BulkLookupUnsupported, MalformedResponse, MatrixApiError
from .locator import ServerLocator
from .models import FoundThreePid, IdentityServerConfig

logger = logging.getLogger(__name__)

LOOKUP_ALGORITHM = "sha256"


def hash_threepid(threepid, pepper: str) -> str:
    """Unpadded URL-safe base64 of sha256("<address> <medium> <pepper>")"""
    digest = hashlib.sha256(f"{threepid.value} {threepid.medium} {pepper}".encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class LookupClient:
    def __init__(self, locator: ServerLocator, identity: IdentityServerClient):
        self._locator = locator
        self._identity = identity

    async def look_up(self, threepids: Iterable) -> List[FoundThreePid]:
        """
        Resolve ThreePids to user ids in one request.

        Only matches are returned. The server config is read once so the whole
        lookup runs against the server active when it started.
        """
        threepids = list(dict.fromkeys(threepids))
        if not threepids:
            return []

        config = self._locator.require_config()
        try:
            return await self._look_up_hashed(config, threepids)
        except MatrixApiError as e:
            if e.errcode != "M_INVALID_PEPPER":
                raise
            logger.info(f"Lookup pepper of {config.url} changed, retrying once")
            return await self._look_up_hashed(config, threepids)

    async def _look_up_hashed(self, config: IdentityServerConfig, threepids: list) -> List[FoundThreePid]:
        details = await self._identity.hash_details(config.url, config.access_token)
        algorithms = details.get("algorithms")
        pepper = details.get("lookup_pepper")
        if not isinstance(algorithms, list) or not isinstance(pepper, str):
            raise MalformedResponse("hash_details response is missing algorithms or lookup_pepper")
        if LOOKUP_ALGORITHM not in algorithms:
            raise BulkLookupUnsupported(f"{config.url} does not support {LOOKUP_ALGORITHM} lookups")

        by_hash = {hash_threepid(threepid, pepper): threepid for threepid in threepids}
        mappings = await self._identity.lookup(
            config.url, config.access_token, LOOKUP_ALGORITHM, pepper, list(by_hash)
        )

        found = [
            FoundThreePid(threepid=by_hash[hashed], matrix_id=matrix_id)
            for hashed, matrix_id in mappings.items()
            if hashed in by_hash
        ]
        logger.debug(f"Lookup of {len(threepids)} ThreePid(s) matched {len(found)}")
        return found
