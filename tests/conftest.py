"""
Shared fixtures: an in-process identity server + homeserver served through
httpx.MockTransport, and an IdentityService wired to it.
"""

import asyncio
import base64
import hashlib
import itertools
import json
import sys
from pathlib import Path
from typing import Optional

import httpx
import pytest
import pytest_asyncio

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from services.identity import IdentityService, IdentityServiceListener, InMemoryBindingStore

HS = "https://hs.example.org"
IS = "https://id.example.org"
USER_ID = "@alice:hs.example.org"


def _hash(address: str, medium: str, pepper: str) -> str:
    digest = hashlib.sha256(f"{address} {medium} {pepper}".encode()).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


class FakeMatrix:
    """Just enough of identity API v2 and client API r0 to drive the service"""

    def __init__(self):
        self.calls: list[tuple[str, str, str]] = []  # (method, host, path)
        self.requests: list[tuple[str, dict]] = []  # (path, json body)
        self.well_known: Optional[dict] = {"m.identity_server": {"base_url": IS}}
        self.unsupported_hosts: set[str] = set()
        self.down_hosts: set[str] = set()
        self.pepper = "matrixrocks"
        self.algorithms = ["none", "sha256"]
        self.invalid_pepper_once = False
        self.valid_code = "123456"
        self.in_use: set[str] = set()
        self.expired_sids: set[str] = set()
        self.submit_error: Optional[tuple[int, str]] = None
        self.bind_error: Optional[tuple[int, str]] = None
        self.bound: dict[tuple[str, str], str] = {}  # (medium, address) -> mxid
        self.sessions: dict[str, dict] = {}  # sid -> {medium, address, client_secret, validated}
        self.gates: dict[str, asyncio.Event] = {}  # path suffix -> event to wait for
        self._sids = itertools.count(1)

    def count(self, path_suffix: str) -> int:
        return sum(1 for _, _, path in self.calls if path.endswith(path_suffix))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        path = request.url.path
        self.calls.append((request.method, host, path))
        body = json.loads(request.content) if request.content else {}
        self.requests.append((path, body))

        for suffix, gate in self.gates.items():
            if path.endswith(suffix):
                await gate.wait()

        if host in self.down_hosts:
            raise httpx.ConnectError("connection refused", request=request)

        if path == "/.well-known/matrix/client":
            if self.well_known is None:
                return httpx.Response(404, json={"errcode": "M_NOT_FOUND", "error": "No well-known"})
            return httpx.Response(200, json=self.well_known)

        if path.startswith("/_matrix/identity/v2"):
            if host in self.unsupported_hosts:
                return httpx.Response(404, json={"errcode": "M_UNRECOGNIZED", "error": "Unrecognized request"})
            return await self._identity(path[len("/_matrix/identity/v2"):], body)

        if path.startswith("/_matrix/client/r0"):
            return self._homeserver(path[len("/_matrix/client/r0"):], body)

        return httpx.Response(404, json={"errcode": "M_UNRECOGNIZED", "error": "Unrecognized request"})

    async def _identity(self, path: str, body: dict) -> httpx.Response:
        if path == "":
            return httpx.Response(200, json={})
        if path == "/account/register":
            return httpx.Response(200, json={"token": "is-token"})
        if path == "/account/logout":
            return httpx.Response(200, json={})

        if path.startswith("/validate/") and path.endswith("/requestToken"):
            medium = path.split("/")[2]
            address = body.get("email") or body.get("phone_number", "").lstrip("+")
            if address in self.in_use:
                return httpx.Response(400, json={"errcode": "M_THREEPID_IN_USE", "error": "In use"})
            for sid, session in self.sessions.items():
                if session["client_secret"] == body["client_secret"]:
                    return httpx.Response(200, json={"sid": sid})
            sid = f"sid{next(self._sids)}"
            self.sessions[sid] = {
                "medium": medium,
                "address": address,
                "client_secret": body["client_secret"],
                "validated": False,
            }
            return httpx.Response(200, json={"sid": sid})

        if path.startswith("/validate/") and path.endswith("/submitToken"):
            if self.submit_error is not None:
                code, errcode = self.submit_error
                return httpx.Response(code, json={"errcode": errcode, "error": "Submit failed"})
            sid = body.get("sid")
            if sid in self.expired_sids:
                return httpx.Response(400, json={"errcode": "M_SESSION_EXPIRED", "error": "Session expired"})
            session = self.sessions.get(sid)
            if session is None or session["client_secret"] != body.get("client_secret"):
                return httpx.Response(400, json={"errcode": "M_NO_VALID_SESSION", "error": "No session"})
            if body.get("token") != self.valid_code:
                return httpx.Response(200, json={"success": False})
            session["validated"] = True
            return httpx.Response(200, json={"success": True})

        if path == "/hash_details":
            return httpx.Response(200, json={"algorithms": self.algorithms, "lookup_pepper": self.pepper})

        if path == "/lookup":
            if self.invalid_pepper_once:
                self.invalid_pepper_once = False
                self.pepper = "newpepper"
                return httpx.Response(400, json={"errcode": "M_INVALID_PEPPER", "error": "Bad pepper"})
            known = {_hash(address, medium, body["pepper"]): mxid for (medium, address), mxid in self.bound.items()}
            mappings = {h: known[h] for h in body["addresses"] if h in known}
            return httpx.Response(200, json={"mappings": mappings})

        return httpx.Response(404, json={"errcode": "M_UNRECOGNIZED", "error": "Unrecognized request"})

    def _homeserver(self, path: str, body: dict) -> httpx.Response:
        if path.endswith("/openid/request_token"):
            return httpx.Response(200, json={
                "access_token": "openid-token",
                "token_type": "Bearer",
                "matrix_server_name": "hs.example.org",
                "expires_in": 3600,
            })

        if path == "/account/3pid/bind":
            if self.bind_error is not None:
                code, errcode = self.bind_error
                return httpx.Response(code, json={"errcode": errcode, "error": "Bind failed"})
            session = self.sessions.get(body.get("sid"))
            if session is None or not session["validated"]:
                return httpx.Response(400, json={"errcode": "M_SESSION_NOT_VALIDATED", "error": "Not validated"})
            self.bound[(session["medium"], session["address"])] = USER_ID
            return httpx.Response(200, json={})

        if path == "/account/3pid/unbind":
            self.bound.pop((body["medium"], body["address"]), None)
            return httpx.Response(200, json={"id_server_unbind_result": "success"})

        return httpx.Response(404, json={"errcode": "M_UNRECOGNIZED", "error": "Unrecognized request"})


class RecordingListener(IdentityServiceListener):
    def __init__(self):
        self.server_changes = []
        self.binding_changes = []

    def on_identity_server_change(self, url):
        self.server_changes.append(url)

    def on_binding_state_change(self, threepid, state):
        self.binding_changes.append((threepid, state))


@pytest.fixture
def matrix():
    return FakeMatrix()


@pytest.fixture
def store():
    return InMemoryBindingStore()


@pytest_asyncio.fixture
async def service(matrix, store):
    http = httpx.AsyncClient(transport=httpx.MockTransport(matrix.handler))
    svc = IdentityService(http, HS, USER_ID, "hs-token", store=store)
    await svc.start()
    yield svc
    await svc.aclose()


@pytest_asyncio.fixture
async def connected(service):
    """Service with the fake identity server configured"""
    await service.set_new_identity_server(IS)
    return service


@pytest.fixture
def listener():
    return RecordingListener()


async def settle():
    """Let queued listener notifications run"""
    for _ in range(3):
        await asyncio.sleep(0)
