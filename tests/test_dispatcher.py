"""Tests for Cancelable handles and the request dispatcher"""

import asyncio

import pytest

from services.identity import Cancelled, NoActiveSession, RequestDispatcher


async def _value(value, delay=0.0):
    await asyncio.sleep(delay)
    return value


async def _fail():
    raise NoActiveSession("nothing here")


@pytest.mark.asyncio
async def test_callback_receives_value_once():
    dispatcher = RequestDispatcher()
    results = []

    handle = dispatcher.dispatch(_value(42), results.append)
    assert await handle == 42
    await asyncio.sleep(0)

    assert len(results) == 1
    assert results[0].ok
    assert results[0].value == 42


@pytest.mark.asyncio
async def test_callback_receives_failure():
    dispatcher = RequestDispatcher()
    results = []

    handle = dispatcher.dispatch(_fail(), results.append)
    with pytest.raises(NoActiveSession):
        await handle
    await asyncio.sleep(0)

    assert len(results) == 1
    assert isinstance(results[0].error, NoActiveSession)
    with pytest.raises(NoActiveSession):
        results[0].unwrap()


@pytest.mark.asyncio
async def test_cancel_before_completion_suppresses_callback():
    dispatcher = RequestDispatcher()
    results = []

    handle = dispatcher.dispatch(_value(1, delay=10), results.append)
    handle.cancel()
    handle.cancel()

    with pytest.raises(Cancelled):
        await handle
    await asyncio.sleep(0)

    assert handle.cancelled
    assert results == []
    assert dispatcher.in_flight() == 0


@pytest.mark.asyncio
async def test_cancel_after_completion_is_noop():
    dispatcher = RequestDispatcher()
    results = []

    handle = dispatcher.dispatch(_value("done"), results.append)
    assert await handle == "done"
    handle.cancel()
    await asyncio.sleep(0)

    assert not handle.cancelled
    assert [r.value for r in results] == ["done"]


@pytest.mark.asyncio
async def test_cancel_key_only_touches_that_key():
    dispatcher = RequestDispatcher()

    first = dispatcher.dispatch(_value(1, delay=10), key="alice")
    second = dispatcher.dispatch(_value(2, delay=10), key="alice")
    other = dispatcher.dispatch(_value(3, delay=0.01), key="bob")
    assert dispatcher.in_flight("alice") == 2

    assert dispatcher.cancel_key("alice") == 2
    assert first.cancelled and second.cancelled
    assert await other == 3


@pytest.mark.asyncio
async def test_callback_errors_do_not_escape():
    dispatcher = RequestDispatcher()

    def explode(result):
        raise RuntimeError("listener bug")

    handle = dispatcher.dispatch(_value(5), explode)
    assert await handle == 5
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_aclose_cancels_everything():
    dispatcher = RequestDispatcher()
    results = []
    handles = [dispatcher.dispatch(_value(i, delay=10), results.append, key=i) for i in range(3)]

    await dispatcher.aclose()

    assert all(h.cancelled for h in handles)
    assert results == []
