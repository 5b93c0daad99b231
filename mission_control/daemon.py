"""
Notification delivery daemon.

Every DELIVERY_POLL_INTERVAL seconds the daemon runs one delivery cycle:
fetch every undelivered notification and flag it delivered. "Delivered"
means handed off to the agents' own mailbox polling, not pushed anywhere.

At most one cycle runs at a time. A tick that fires while a cycle is still
in flight is skipped, never queued. Cycle failures are logged and the
schedule continues.

Run standalone against a server:
    python -m mission_control.daemon --api-url http://127.0.0.1:3006
or against the database directly:
    python -m mission_control.daemon --in-process
"""
import argparse
import asyncio
import logging
import math
import signal
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aiosqlite
import httpx

from mission_control.config import DAEMON_API_URL, DELIVERY_POLL_INTERVAL
from mission_control.db import crud
from mission_control.db.database import close_db, get_db
from mission_control.errors import PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    pending: int = 0
    delivered: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    by_recipient: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeliveryReport":
        return cls(
            pending=int(data.get("pending", 0)),
            delivered=int(data.get("delivered", 0)),
            failed=int(data.get("failed", 0)),
            errors=list(data.get("errors") or []),
            by_recipient=dict(data.get("by_recipient") or {}),
        )


async def deliver_pending(db: aiosqlite.Connection, limit: Optional[int] = None) -> DeliveryReport:
    """Run one delivery cycle against the queue.

    A failure to flag one notification is counted and the cycle moves on.
    Failure to read the pending set propagates.
    """
    by_recipient = await crud.notification_pending_by_recipient(db)
    pending = await crud.notification_list_pending(db, limit=limit)
    report = DeliveryReport(pending=len(pending), by_recipient=by_recipient)
    for n in pending:
        try:
            if await crud.notification_mark_delivered(db, n.id):
                report.delivered += 1
        except PersistenceError as e:
            report.failed += 1
            report.errors.append(f"{n.id}: {e}")
    return report


async def delivery_status(db: aiosqlite.Connection) -> dict[str, Any]:
    """Pending counts without delivering anything."""
    by_recipient = await crud.notification_pending_by_recipient(db)
    return {"pending": sum(by_recipient.values()), "by_recipient": by_recipient}


PollFn = Callable[[], Awaitable[DeliveryReport]]


class InProcessPoller:
    """Poll source that talks to the database directly."""

    def __init__(self, db_provider: Callable[[], Awaitable[aiosqlite.Connection]] = get_db) -> None:
        self._db_provider = db_provider

    async def __call__(self) -> DeliveryReport:
        db = await self._db_provider()
        return await deliver_pending(db)

    async def aclose(self) -> None:
        await close_db()


class HttpDeliveryPoller:
    """Poll source that asks a running server to run the cycle."""

    def __init__(self, base_url: str = DAEMON_API_URL, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None) -> None:
        self.url = base_url.rstrip("/") + "/api/notifications/deliver"
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __call__(self) -> DeliveryReport:
        resp = await self._client.post(self.url)
        resp.raise_for_status()
        return DeliveryReport.from_dict(resp.json())

    async def aclose(self) -> None:
        await self._client.aclose()


class DaemonState(str, Enum):
    STARTUP = "startup"
    POLLING = "polling"
    DELIVERING = "delivering"
    SHUTDOWN = "shutdown"


class DeliveryDaemon:
    """
    Fixed-interval delivery loop with an overlap guard.

    Attributes:
        cycles: completed poll cycles
        skipped: ticks dropped because a cycle was still running
        failures: cycles that raised
    """

    def __init__(self, poll: PollFn, interval: float = DELIVERY_POLL_INTERVAL) -> None:
        self._poll = poll
        self._interval = interval
        self._shutdown_event = asyncio.Event()
        self._state = DaemonState.STARTUP
        self._polling = False
        self._in_flight: Optional[asyncio.Task] = None
        self.cycles = 0
        self.skipped = 0
        self.failures = 0

    @property
    def state(self) -> DaemonState:
        return self._state

    @property
    def is_polling(self) -> bool:
        return self._polling

    @property
    def interval(self) -> float:
        return self._interval

    def request_shutdown(self) -> None:
        """Stop scheduling ticks. An in-flight cycle is cancelled, not awaited."""
        self._shutdown_event.set()

    async def tick(self) -> bool:
        """Run one cycle now. Returns False if a cycle was already running."""
        if not self._begin():
            return False
        await self._cycle()
        return True

    def _begin(self) -> bool:
        # Check-and-set with no await in between: the guard is atomic on the loop.
        if self._polling:
            self.skipped += 1
            logger.info("Previous poll still in progress, skipping tick")
            return False
        self._polling = True
        self._state = DaemonState.DELIVERING
        return True

    async def _cycle(self) -> None:
        try:
            report = await self._poll()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error(f"Polling error: {type(e).__name__}: {e}")
        else:
            self.cycles += 1
            self._log_report(report)
        finally:
            self._polling = False
            if self._state is DaemonState.DELIVERING:
                self._state = DaemonState.POLLING

    def _log_report(self, report: DeliveryReport) -> None:
        if report.delivered > 0:
            logger.info(f"Delivered {report.delivered} notifications")
        if report.failed > 0:
            logger.error(f"Failed to deliver {report.failed} notifications")
            for err in report.errors:
                logger.error(f"   - {err}")
        if report.delivered == 0 and report.failed == 0:
            logger.debug("No pending notifications")

    async def run(self) -> None:
        """Tick on a fixed schedule until shutdown is requested."""
        loop = asyncio.get_running_loop()
        self._state = DaemonState.POLLING
        logger.info(f"Delivery daemon started (interval: {self._interval}s)")
        next_at = loop.time()
        try:
            while not self._shutdown_event.is_set():
                if self._begin():
                    self._in_flight = loop.create_task(self._cycle(), name="delivery-cycle")
                next_at += self._interval
                now = loop.time()
                if next_at < now:
                    # Fell behind: drop the missed slots instead of bursting.
                    next_at += self._interval * math.ceil((now - next_at) / self._interval)
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=next_at - now)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._state = DaemonState.SHUTDOWN
            if self._in_flight is not None and not self._in_flight.done():
                self._in_flight.cancel()
            logger.info("Delivery daemon stopped")

    async def serve(self) -> None:
        """run() under supervision: an unexpected crash restarts the loop."""
        while not self._shutdown_event.is_set():
            try:
                await self.run()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Delivery daemon crashed, restarting")
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._interval)
                except asyncio.TimeoutError:
                    pass


def _install_signal_handlers(daemon: DeliveryDaemon) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, daemon, sig)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler; Ctrl+C raises KeyboardInterrupt instead.
            pass


def _on_signal(daemon: DeliveryDaemon, sig: signal.Signals) -> None:
    logger.info(f"Received {sig.name}, shutting down...")
    daemon.request_shutdown()


async def _main(args: argparse.Namespace) -> None:
    poller = InProcessPoller() if args.in_process else HttpDeliveryPoller(args.api_url)
    daemon = DeliveryDaemon(poller, interval=args.interval)
    _install_signal_handlers(daemon)
    logger.info("=" * 60)
    logger.info("Mission Control Notification Daemon")
    logger.info(f"   Polling: {'database (in-process)' if args.in_process else poller.url}")
    logger.info(f"   Interval: {args.interval}s")
    logger.info("=" * 60)
    try:
        await daemon.serve()
    finally:
        await poller.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Mission Control notification delivery daemon")
    parser.add_argument("--api-url", default=DAEMON_API_URL, help="Base URL of the Mission Control server")
    parser.add_argument("--interval", type=float, default=DELIVERY_POLL_INTERVAL, help="Seconds between polls")
    parser.add_argument("--in-process", action="store_true",
                        help="Deliver straight from the database instead of calling the server")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        asyncio.run(_main(args))
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
