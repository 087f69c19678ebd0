"""Tests for hashed lookup and share status aggregation"""

import pytest

from services.identity import (
    BindingState,
    BulkLookupUnsupported,
    Email,
    FoundThreePid,
    NoIdentityServerConfigured,
    Phone,
    SharedState,
)
from services.identity.lookup import hash_threepid

ALICE = Email(value="alice@example.com")
BOB = Email(value="bob@example.com")
PHONE = Phone(value="447700900123")


def test_hash_threepid_format():
    hashed = hash_threepid(ALICE, "matrixrocks")
    assert "=" not in hashed
    assert "+" not in hashed and "/" not in hashed
    assert len(hashed) == 43
    assert hashed != hash_threepid(ALICE, "otherpepper")


@pytest.mark.asyncio
async def test_lookup_returns_only_matches(connected, matrix):
    matrix.bound[("email", "alice@example.com")] = "@userx:hs.example.org"

    found = await connected.look_up([ALICE, BOB])

    assert found == [FoundThreePid(threepid=ALICE, matrix_id="@userx:hs.example.org")]


@pytest.mark.asyncio
async def test_lookup_sends_hashes_not_addresses(connected, matrix):
    await connected.look_up([ALICE, PHONE])

    _, body = next((p, b) for p, b in matrix.requests if p.endswith("/lookup"))
    assert body["algorithm"] == "sha256"
    assert body["pepper"] == "matrixrocks"
    assert sorted(body["addresses"]) == sorted([
        hash_threepid(ALICE, "matrixrocks"),
        hash_threepid(PHONE, "matrixrocks"),
    ])


@pytest.mark.asyncio
async def test_empty_lookup_makes_no_request(connected, matrix):
    calls = len(matrix.calls)
    assert await connected.look_up([]) == []
    assert len(matrix.calls) == calls


@pytest.mark.asyncio
async def test_lookup_retries_once_on_new_pepper(connected, matrix):
    matrix.bound[("msisdn", "447700900123")] = "@bob:hs.example.org"
    matrix.invalid_pepper_once = True

    found = await connected.look_up([PHONE])

    assert [f.matrix_id for f in found] == ["@bob:hs.example.org"]
    assert matrix.count("/hash_details") == 2
    assert matrix.count("/lookup") == 2


@pytest.mark.asyncio
async def test_lookup_needs_sha256(connected, matrix):
    matrix.algorithms = ["none"]
    with pytest.raises(BulkLookupUnsupported):
        await connected.look_up([ALICE])


@pytest.mark.asyncio
async def test_lookup_needs_identity_server(service):
    with pytest.raises(NoIdentityServerConfigured):
        await service.look_up([ALICE])


@pytest.mark.asyncio
async def test_server_lookup_wins_over_local_session(connected, matrix):
    await connected.start_bind_threepid(ALICE)
    assert connected.tracker.state_of(ALICE) == BindingState.CODE_SENT
    matrix.bound[("email", "alice@example.com")] = "@alice:hs.example.org"

    status = await connected.get_share_status([ALICE])

    assert status == {ALICE: SharedState.SHARED}


@pytest.mark.asyncio
async def test_share_status_per_threepid(connected, matrix):
    matrix.bound[("msisdn", "447700900123")] = "@alice:hs.example.org"
    await connected.start_bind_threepid(ALICE)
    await connected.submit_validation_token(ALICE, "123456")
    lookups = matrix.count("/lookup")

    status = await connected.get_share_status([ALICE, BOB, PHONE])

    assert status == {
        ALICE: SharedState.BINDING_IN_PROGRESS,
        BOB: SharedState.NOT_SHARED,
        PHONE: SharedState.SHARED,
    }
    # One lookup for the whole batch
    assert matrix.count("/lookup") == lookups + 1


@pytest.mark.asyncio
async def test_share_status_after_finalize(connected):
    await connected.start_bind_threepid(ALICE)
    await connected.submit_validation_token(ALICE, "123456")
    await connected.finalize_bind_threepid(ALICE)

    assert await connected.get_share_status([ALICE]) == {ALICE: SharedState.SHARED}


@pytest.mark.asyncio
async def test_share_status_after_cancel(connected):
    await connected.start_bind_threepid(ALICE)
    await connected.cancel_bind_threepid(ALICE)

    assert await connected.get_share_status([ALICE]) == {ALICE: SharedState.NOT_SHARED}
