"""
Sweep schedulers.

EmbeddedBillingScheduler ticks inside the API server's event loop as the
"embedded" executor. BillingDaemon is the standalone process: its own sweep
timer, an independent heartbeat timer and graceful shutdown on SIGINT/SIGTERM.
Both only call SweepEngine.run_sweep(); the lease decision happens there.
"""

import asyncio
import os
import platform
import signal
import socket
import threading
from typing import Any, Dict, Optional

import structlog

from ..config import BillingConfig
from ..core.clock import to_iso
from ..persistence.models import EMBEDDED_EXECUTOR_ID
from .sweep import SweepEngine, SweepResult

logger = structlog.get_logger()


def generate_executor_id() -> str:
    """Standalone executor identity: <hostname>-<pid>."""
    return f"{socket.gethostname()}-{os.getpid()}"


class EmbeddedBillingScheduler:
    """Periodic sweep inside the API process."""

    def __init__(self, engine: SweepEngine, interval: Optional[int] = None):
        self.engine = engine
        self.interval = interval or engine.config.billing_interval_seconds
        self.executor_id = EMBEDDED_EXECUTOR_ID
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("embedded_scheduler_started", interval=self.interval)

    async def _loop(self):
        while self.running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("embedded_scheduler_error", error=str(e))
            await asyncio.sleep(self.interval)

    async def tick(self) -> SweepResult:
        # Sweeps do blocking database I/O
        return await asyncio.to_thread(self.engine.run_sweep, self.executor_id)

    async def stop(self):
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await asyncio.to_thread(self.engine.coordinator.mark_stopped, self.executor_id)
        logger.info("embedded_scheduler_stopped")


class BillingDaemon:
    """
    Standalone billing executor.

    Always authoritative while live: it never defers to the embedded
    scheduler, and keeps its lease fresh with a heartbeat thread so that
    long billing intervals do not let it look stale.
    """

    def __init__(
        self,
        engine: SweepEngine,
        config: Optional[BillingConfig] = None,
        executor_id: Optional[str] = None,
    ):
        self.engine = engine
        self.config = config or engine.config
        self.executor_id = executor_id or generate_executor_id()
        self.coordinator = engine.coordinator
        self._stop = threading.Event()
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._started = False

    def metadata(self) -> Dict[str, Any]:
        return {
            "hostname": socket.gethostname(),
            "pid": os.getpid(),
            "billing_interval_seconds": self.config.billing_interval_seconds,
            "heartbeat_interval_seconds": self.config.heartbeat_interval_seconds,
            "python_version": platform.python_version(),
            "started_at": to_iso(self.engine.clock()),
        }

    def start(self) -> None:
        """Connect, register the executor row and start the heartbeat thread."""
        self.engine.db.connect_with_retry()
        now = self.engine.clock()
        self.coordinator.heartbeat(self.executor_id, now=now, started_at=now, metadata=self.metadata())

        self._stop.clear()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            name=f"heartbeat-{self.executor_id}",
            daemon=True,
        )
        self._heartbeat_thread.start()
        self._started = True
        logger.info(
            "billing_daemon_started",
            executor_id=self.executor_id,
            interval=self.config.billing_interval_seconds,
            heartbeat_interval=self.config.heartbeat_interval_seconds,
        )

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.config.heartbeat_interval_seconds):
            try:
                self.coordinator.heartbeat(self.executor_id)
            except Exception as e:
                logger.error("heartbeat_write_failed", executor_id=self.executor_id, error=str(e))

    def run_once(self) -> SweepResult:
        return self.engine.run_sweep(self.executor_id)

    def run(self, install_signal_handlers: bool = True) -> None:
        """Sweep immediately, then every billing interval until stopped."""
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self.request_stop)
            signal.signal(signal.SIGTERM, self.request_stop)

        self.start()
        try:
            while not self._stop.is_set():
                self.run_once()
                self._stop.wait(self.config.billing_interval_seconds)
        finally:
            self.shutdown()

    def request_stop(self, signum: Optional[int] = None, frame: Any = None) -> None:
        """Signal handler: the in-flight sweep finishes, no new one starts."""
        if self._stop.is_set():
            logger.warning("billing_daemon_shutdown_in_progress", executor_id=self.executor_id)
            return
        name = signal.Signals(signum).name if signum else "request"
        logger.info("billing_daemon_stopping", executor_id=self.executor_id, signal=name)
        self._stop.set()

    def shutdown(self) -> None:
        """Stop timers, then mark the executor stopped so others take over at once."""
        if not self._started:
            return
        self._stop.set()
        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join(timeout=self.config.heartbeat_interval_seconds)
            self._heartbeat_thread = None
        self.coordinator.mark_stopped(self.executor_id)
        self._started = False
        logger.info("billing_daemon_stopped", executor_id=self.executor_id)
