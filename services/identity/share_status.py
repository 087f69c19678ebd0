"""Combine lookup results with local binding sessions"""

from typing import Dict, Iterable

from .binding import ThreePidBindingTracker
from .lookup import LookupClient
from .models import SharedState


class ShareStatusAggregator:
    def __init__(self, lookup: LookupClient, tracker: ThreePidBindingTracker):
        self._lookup = lookup
        self._tracker = tracker

    async def get_share_status(self, threepids: Iterable) -> Dict[object, SharedState]:
        """
        SHARED if the identity server knows the ThreePid (it is authoritative),
        BINDING_IN_PROGRESS if a live local session exists, NOT_SHARED otherwise.
        Issues a single lookup for the whole batch.
        """
        threepids = list(dict.fromkeys(threepids))
        if not threepids:
            return {}

        shared = {found.threepid for found in await self._lookup.look_up(threepids)}

        status = {}
        for threepid in threepids:
            if threepid in shared:
                status[threepid] = SharedState.SHARED
            elif self._tracker.has_live_session(threepid):
                status[threepid] = SharedState.BINDING_IN_PROGRESS
            else:
                status[threepid] = SharedState.NOT_SHARED
        return status
