import asyncio

import httpx
import pytest

from mission_control.daemon import DaemonState, DeliveryDaemon, DeliveryReport, HttpDeliveryPoller, InProcessPoller
from mission_control.db import crud


@pytest.mark.asyncio
async def test_tick_skipped_while_previous_cycle_in_flight():
    gate = asyncio.Event()
    calls = 0

    async def slow_poll():
        nonlocal calls
        calls += 1
        await gate.wait()
        return DeliveryReport()

    daemon = DeliveryDaemon(slow_poll, interval=0.01)
    first = asyncio.create_task(daemon.tick())
    await asyncio.sleep(0)

    assert daemon.is_polling
    assert await daemon.tick() is False
    assert daemon.skipped == 1

    gate.set()
    assert await first is True
    assert calls == 1
    assert not daemon.is_polling
    assert daemon.cycles == 1


@pytest.mark.asyncio
async def test_run_never_overlaps_cycles():
    running = 0
    peak = 0

    async def slow_poll():
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.035)
        running -= 1
        return DeliveryReport()

    daemon = DeliveryDaemon(slow_poll, interval=0.01)
    runner = asyncio.create_task(daemon.run())
    await asyncio.sleep(0.2)
    daemon.request_shutdown()
    await asyncio.wait_for(runner, timeout=1)

    assert peak == 1
    assert daemon.cycles >= 2
    assert daemon.skipped >= 1
    assert daemon.state is DaemonState.SHUTDOWN


@pytest.mark.asyncio
async def test_poll_failure_is_logged_and_schedule_continues(caplog):
    attempts = 0

    async def flaky_poll():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("database is locked")
        return DeliveryReport(pending=1, delivered=1)

    daemon = DeliveryDaemon(flaky_poll, interval=0.01)

    assert await daemon.tick() is True
    assert daemon.failures == 1
    assert not daemon.is_polling
    assert "database is locked" in caplog.text

    assert await daemon.tick() is True
    assert daemon.cycles == 1


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_cycle():
    started = asyncio.Event()

    async def hanging_poll():
        started.set()
        await asyncio.Event().wait()

    daemon = DeliveryDaemon(hanging_poll, interval=0.01)
    runner = asyncio.create_task(daemon.run())
    await started.wait()
    in_flight = daemon._in_flight

    daemon.request_shutdown()
    await asyncio.wait_for(runner, timeout=1)
    await asyncio.sleep(0.01)

    assert in_flight.cancelled()
    assert daemon.state is DaemonState.SHUTDOWN


@pytest.mark.asyncio
async def test_in_process_poller_delivers(db, agents):
    await crud.notification_enqueue(db, agents["alice"].id, "system", "t", "b")

    async def provider():
        return db

    daemon = DeliveryDaemon(InProcessPoller(provider), interval=0.01)
    assert await daemon.tick() is True
    assert await crud.notification_list_pending(db) == []


@pytest.mark.asyncio
async def test_http_poller_posts_to_deliver_endpoint():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json={"pending": 2, "delivered": 2, "failed": 0,
                                         "errors": [], "by_recipient": {"Bob": 2}})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    poller = HttpDeliveryPoller("http://mission.test/", client=client)

    report = await poller()
    await poller.aclose()

    assert seen == [("POST", "/api/notifications/deliver")]
    assert report.delivered == 2
    assert report.by_recipient == {"Bob": 2}


@pytest.mark.asyncio
async def test_http_poller_error_counts_as_failed_cycle():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    daemon = DeliveryDaemon(HttpDeliveryPoller("http://mission.test", client=client), interval=0.01)

    assert await daemon.tick() is True
    assert daemon.failures == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_serve_restarts_run_after_crash(caplog):
    async def poll():
        return DeliveryReport()

    daemon = DeliveryDaemon(poll, interval=0.01)
    calls = 0

    async def crashing_run():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("event loop hiccup")
        daemon.request_shutdown()

    daemon.run = crashing_run
    await asyncio.wait_for(daemon.serve(), timeout=1)

    assert calls == 2
    assert "Delivery daemon crashed, restarting" in caplog.text
