"""Fixed-size pool of gateway worker processes with unconditional restart."""

from __future__ import annotations

import asyncio
import multiprocessing
import os
import signal
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

import structlog
import uvicorn

from .common.metrics import GLOBAL_REGISTRY, Counter

LOGGER = structlog.get_logger("edgeproxy.supervisor")

RESTART_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgeproxy_worker_restarts_total", "Worker processes replaced after exiting")
)


class WorkerProcess(Protocol):
    pid: Optional[int]
    exitcode: Optional[int]

    def start(self) -> None: ...

    def is_alive(self) -> bool: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    def join(self, timeout: Optional[float] = None) -> None: ...


class WorkerState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


@dataclass
class WorkerSlot:
    index: int
    state: WorkerState = WorkerState.STARTING
    process: Optional[WorkerProcess] = None
    restarts: int = 0

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None


def worker_count(max_workers: int, cpu_count: Optional[int] = None) -> int:
    available = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return max(1, min(available, max_workers))


def run_worker(config: uvicorn.Config, sockets: list[socket.socket]) -> None:
    """Entry point of a worker process: serve the gateway on the inherited socket."""
    uvicorn.Server(config).run(sockets=sockets)


class WorkerSupervisor:
    """Keeps exactly ``num_workers`` worker processes alive.

    The listening socket is bound once here and inherited by every worker, so
    a replacement worker picks up the same port without a gap in listening.
    A worker that exits for any reason is replaced on the next reconcile
    cycle, with no backoff and no restart limit. The supervisor itself serves
    no requests and holds no cache or admission state.
    """

    def __init__(
        self,
        config: uvicorn.Config,
        num_workers: int,
        *,
        process_factory: Optional[Callable[[int], WorkerProcess]] = None,
        poll_interval: float = 0.5,
        stop_timeout: float = 10.0,
    ) -> None:
        self._config = config
        self._num_workers = max(1, num_workers)
        self._process_factory = process_factory or self._spawn_process
        self._poll_interval = poll_interval
        self._stop_timeout = stop_timeout
        self._socket: Optional[socket.socket] = None
        self._slots = [WorkerSlot(index=index) for index in range(self._num_workers)]
        self._stop_event: Optional[asyncio.Event] = None
        self._started = False

    @property
    def slots(self) -> list[WorkerSlot]:
        return list(self._slots)

    @property
    def num_workers(self) -> int:
        return self._num_workers

    @property
    def listen_address(self) -> Optional[tuple]:
        """Address of the shared listening socket once it has been bound."""
        return self._socket.getsockname() if self._socket is not None else None

    def running_count(self) -> int:
        return sum(
            1
            for slot in self._slots
            if slot.state is WorkerState.RUNNING and slot.process is not None and slot.process.is_alive()
        )

    def _spawn_process(self, index: int) -> WorkerProcess:
        if self._socket is None:
            self._socket = self._config.bind_socket()
        context = multiprocessing.get_context("spawn")
        return context.Process(
            target=run_worker,
            kwargs={"config": self._config, "sockets": [self._socket]},
            name=f"edgeproxy-worker-{index}",
        )

    def _launch(self, slot: WorkerSlot) -> bool:
        """Start a process for ``slot``. A failed spawn leaves the slot EXITED for the next cycle."""
        slot.state = WorkerState.STARTING
        try:
            process = self._process_factory(slot.index)
            process.start()
        except OSError as exc:
            slot.process = None
            slot.state = WorkerState.EXITED
            LOGGER.warning("worker_spawn_failed", slot=slot.index, restarts=slot.restarts, error=str(exc))
            return False
        slot.process = process
        slot.state = WorkerState.RUNNING
        LOGGER.info("worker_started", slot=slot.index, pid=process.pid, restarts=slot.restarts)
        return True

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        LOGGER.info(
            "supervisor_starting",
            workers=self._num_workers,
            host=self._config.host,
            port=self._config.port,
        )
        for slot in self._slots:
            self._launch(slot)

    def reconcile(self) -> int:
        """Replace every worker that has exited or failed to spawn.

        Returns the number of workers successfully restarted.
        """
        restarted = 0
        for slot in self._slots:
            process = slot.process
            if slot.state is WorkerState.RUNNING:
                if process is not None and process.is_alive():
                    continue
                slot.state = WorkerState.EXITED
                if process is not None:
                    LOGGER.warning("worker_exited", slot=slot.index, pid=process.pid, exitcode=process.exitcode)
                    process.join(0)
            elif slot.state is not WorkerState.EXITED:
                continue
            slot.restarts += 1
            RESTART_COUNTER.inc()
            if self._launch(slot):
                restarted += 1
        return restarted

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Start the pool and reconcile until SIGINT or SIGTERM."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.request_stop)
        try:
            self.start()
            while not self._stop_event.is_set():
                self.reconcile()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(signum)
            self.stop()

    def stop(self) -> None:
        LOGGER.info("supervisor_stopping", workers=self._num_workers)
        for slot in self._slots:
            if slot.process is not None and slot.process.is_alive():
                slot.process.terminate()
        for slot in self._slots:
            process = slot.process
            if process is None:
                continue
            process.join(self._stop_timeout)
            if process.is_alive():
                LOGGER.warning("worker_kill", slot=slot.index, pid=process.pid)
                process.kill()
                process.join(self._stop_timeout)
            slot.state = WorkerState.EXITED
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        self._started = False
        LOGGER.info("supervisor_stopped")
