from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
import signal
import time
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence

from .job import Candidate, Job
from .mining.errors import MinerError, TransportError
from .mining.hash_search import ITER_COUNT
from .rpc_client import NodeClient
from .scanner import WorkerSlot

log = logging.getLogger("liberty_miner.core")


class JobSink(Protocol):
    def deliver(self, job: Job) -> None: ...


class JobDispatcher:
    """
    Polls the node for work and hands every new job to every slot.

    Change detection is by `job_id` only; re-fetching the job currently
    being mined is a no-op. Retryable fetch failures are logged and retried
    after `retry_delay`; anything else ends `run()` with that exception.
    """

    def __init__(
        self,
        fetch_job: Callable[[], Awaitable[Job]],
        slots: Sequence[JobSink],
        *,
        poll_interval: float = 1.0,
        retry_delay: float = 1.0,
    ) -> None:
        self._fetch_job = fetch_job
        self._slots = list(slots)
        self._poll_interval = poll_interval
        self._retry_delay = retry_delay
        self._stop = asyncio.Event()
        self.current_job: Optional[Job] = None
        self.broadcasts = 0

    def stop(self) -> None:
        self._stop.set()

    async def poll_once(self) -> bool:
        job = await self._fetch_job()
        if self.current_job is not None and job.job_id == self.current_job.job_id:
            return False

        log.info("New mining job received: block=%d jobId=%s", job.block_number, job.job_id)
        for slot in self._slots:
            slot.deliver(job)
        self.current_job = job
        self.broadcasts += 1
        return True

    async def run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.poll_once()
            except MinerError as exc:
                if not exc.retryable:
                    raise
                log.warning("Error fetching work: %s", exc)
                await self._sleep(self._retry_delay)
                continue
            await self._sleep(self._poll_interval)

    async def _sleep(self, delay: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), delay)


class LibertyMiner:
    """
    High-level coordinator that connects to the node, runs the worker slots
    and feeds them jobs from the dispatcher.
    """

    def __init__(
        self,
        *,
        endpoint: str,
        threads: int,
        poll_interval: float = 1.0,
        retry_delay: float = 1.0,
        request_timeout: float = 10.0,
        submit_timeout: float = 30.0,
        seed: Optional[int] = None,
        iterations: int = ITER_COUNT,
    ) -> None:
        if threads < 1:
            raise ValueError("threads must be at least 1")
        self._endpoint = endpoint
        self._threads = threads
        self._poll_interval = poll_interval
        self._retry_delay = retry_delay
        self._request_timeout = request_timeout
        self._submit_timeout = submit_timeout
        self._seed = seed
        self._iterations = iterations

        self._client: Optional[NodeClient] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._slots: List[WorkerSlot] = []
        self._dispatcher: Optional[JobDispatcher] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._halt: Optional[asyncio.Event] = None
        self.failure: Optional[BaseException] = None

    @property
    def slots(self) -> List[WorkerSlot]:
        return list(self._slots)

    @property
    def dispatcher(self) -> Optional[JobDispatcher]:
        return self._dispatcher

    async def start(self) -> None:
        """
        Connect and start mining. Raises TransportError if the node is
        unreachable and ProtocolError if its first reply is malformed.
        """
        self._loop = asyncio.get_running_loop()
        self._halt = asyncio.Event()
        client = NodeClient(self._endpoint, timeout=self._request_timeout)
        try:
            await client.connect()
        except MinerError:
            await client.close()
            raise
        self._client = client
        log.info("Connected to node %s; starting %d worker slots", self._endpoint, self._threads)

        base_seed = self._seed if self._seed is not None else time.time_ns()
        for slot_id in range(self._threads):
            slot = WorkerSlot(
                slot_id,
                self._submit_from_thread,
                seed=base_seed + slot_id,
                iterations=self._iterations,
            )
            slot.start()
            self._slots.append(slot)

        self._dispatcher = JobDispatcher(
            client.fetch_job,
            self._slots,
            poll_interval=self._poll_interval,
            retry_delay=self._retry_delay,
        )
        self._dispatch_task = asyncio.create_task(self._dispatcher.run())
        self._dispatch_task.add_done_callback(self._on_dispatch_done)

    def request_stop(self) -> None:
        if self._halt is not None:
            self._halt.set()

    async def wait_stopped(self) -> None:
        """Block until `request_stop()` is called or job fetching dies."""
        if self._halt is not None:
            await self._halt.wait()

    def _on_dispatch_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        self.failure = task.exception()
        log.error("Job fetching stopped: %s", self.failure, exc_info=self.failure)
        self.request_stop()

    async def stop(self) -> None:
        if self._dispatcher:
            self._dispatcher.stop()
        if self._dispatch_task:
            # A failure has already been recorded by _on_dispatch_done.
            await asyncio.gather(self._dispatch_task, return_exceptions=True)
            self._dispatch_task = None
        for slot in self._slots:
            slot.stop()
        for slot in self._slots:
            slot.join(timeout=2.0)
        if self._client:
            await self._client.close()

    # ------------------- Share submission -------------------

    def _submit_from_thread(self, candidate: Candidate) -> bool:
        """Runs on a search thread; the client itself is only touched on the loop."""
        if self._client is None or self._loop is None:
            raise TransportError(message="no node client is active")
        fut = asyncio.run_coroutine_threadsafe(
            self._client.submit_solution(
                candidate.nonce_bytes,
                candidate.header_hash,
                candidate.mix_digest,
            ),
            self._loop,
        )
        try:
            return fut.result(timeout=self._submit_timeout)
        except concurrent.futures.TimeoutError as exc:
            fut.cancel()
            raise TransportError(
                message=f"submission not answered within {self._submit_timeout:.1f}s",
            ) from exc
        except concurrent.futures.CancelledError as exc:
            raise TransportError(message="submission cancelled; miner is shutting down") from exc


# Convenience runner ---------------------------------------------------------

async def run_miner(args: Any) -> None:
    miner = LibertyMiner(endpoint=args.endpoint, threads=args.threads)

    await miner.start()
    loop = asyncio.get_running_loop()

    def _set_stop(*_: Any) -> None:
        loop.call_soon_threadsafe(miner.request_stop)

    for signame in ("SIGINT", "SIGTERM"):
        if hasattr(signal, signame):
            sig = getattr(signal, signame)
            try:
                loop.add_signal_handler(sig, miner.request_stop)
            except NotImplementedError:
                # Windows Proactor loops do not implement add_signal_handler; fall back to sync handler.
                with contextlib.suppress(ValueError, RuntimeError):
                    signal.signal(sig, _set_stop)
    log.info("Miner started. Press Ctrl+C to stop.")
    await miner.wait_stopped()
    await miner.stop()
    if miner.failure is not None:
        raise miner.failure
