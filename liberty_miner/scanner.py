from __future__ import annotations

import logging
import multiprocessing
import queue
import signal
import threading
from typing import Any, Optional, Tuple

from .job import Candidate, Job
from .mining.errors import MinerError
from .mining.hash_search import (ITER_COUNT, HashChainSearch, Submitter,
                                 deliver_candidate)
from .mining.nonce_domain import NonceSource

log = logging.getLogger("liberty_miner.scanner")

# Search processes start from a fresh interpreter and inherit none of the
# coordinator's threads, sockets or event loop.
_MP = multiprocessing.get_context("spawn")

_OUTCOME_POLL = 0.25

SearchOutcome = Tuple[Optional[Candidate], int]


def _search_process(
    slot_id: int,
    job: Job,
    start_nonce: int,
    iterations: int,
    cancel: Any,
    results: Any,
) -> None:
    """Search process entry point. Reports exactly one (candidate, attempts) outcome."""
    # Ctrl+C is handled by the coordinator, which cancels the search.
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    search = HashChainSearch(None, iterations=iterations, worker_id=slot_id)
    candidate = search.search(job, start_nonce, cancel)
    results.put((candidate, search.attempts))


class WorkerSlot(threading.Thread):
    """
    Long-lived supervisor thread for one stream of hash-chain searches.

    Jobs arrive through the slot's own inbox (`deliver`). Every new job
    cancels the running search without waiting for it and starts a fresh
    search process from a new random nonce; the old process notices the
    cancellation at its next nonce attempt and exits on its own.

    Hashing happens in the search process, so slots hash in parallel on
    separate cores. A small watcher thread per search waits for the
    process's outcome and submits any solution from this process, where the
    node client lives.
    """

    def __init__(
        self,
        slot_id: int,
        submit: Optional[Submitter],
        *,
        seed: Optional[int] = None,
        iterations: int = ITER_COUNT,
    ) -> None:
        super().__init__(name=f"worker-slot-{slot_id}", daemon=True)
        self.slot_id = slot_id
        self._submit = submit
        self._nonces = NonceSource(seed)
        self._iterations = iterations

        self._inbox: "queue.Queue[Optional[Job]]" = queue.Queue()
        self._cancel: Optional[Any] = None
        self._search_process: Optional[multiprocessing.process.BaseProcess] = None
        self._search_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._attempts = 0
        self.current_job: Optional[Job] = None
        self.searches_started = 0

    @property
    def attempts(self) -> int:
        """Nonce attempts reported by searches that have finished."""
        with self._lock:
            return self._attempts

    @property
    def search_thread(self) -> Optional[threading.Thread]:
        return self._search_thread

    @property
    def search_process(self) -> Optional[multiprocessing.process.BaseProcess]:
        return self._search_process

    def deliver(self, job: Job) -> None:
        self._inbox.put(job)

    def stop(self) -> None:
        self._inbox.put(None)

    # Internal helpers -------------------------------------------------

    def _next_job(self) -> Optional[Job]:
        job = self._inbox.get()
        if job is None:
            return None
        # Anything queued behind it is newer; older jobs are already stale.
        while True:
            try:
                newer = self._inbox.get_nowait()
            except queue.Empty:
                return job
            if newer is None:
                return None
            job = newer

    def _preempt(self) -> None:
        if self._cancel is not None:
            self._cancel.set()
            self._cancel = None

    def _launch(self, job: Job) -> None:
        cancel = _MP.Event()
        results = _MP.Queue()
        start_nonce = self._nonces.next_start()
        name = f"search-{self.slot_id}-{self.searches_started}"
        proc = _MP.Process(
            target=_search_process,
            args=(self.slot_id, job, start_nonce, self._iterations, cancel, results),
            name=name,
            daemon=True,
        )
        thread = threading.Thread(
            target=self._watch_search,
            args=(proc, job, start_nonce, results),
            name=f"{name}-watch",
            daemon=True,
        )
        self._cancel = cancel
        self._search_process = proc
        self._search_thread = thread
        self.current_job = job
        self.searches_started += 1
        proc.start()
        thread.start()

    def _await_outcome(self, proc: multiprocessing.process.BaseProcess, results: Any) -> SearchOutcome:
        while True:
            try:
                return results.get(timeout=_OUTCOME_POLL)
            except queue.Empty:
                if proc.is_alive():
                    continue
            # The process is gone; its outcome, if any, is already in the pipe.
            try:
                return results.get(timeout=_OUTCOME_POLL)
            except queue.Empty:
                raise MinerError(
                    message=f"search process exited without an outcome (exit code {proc.exitcode})",
                    context={"exitcode": proc.exitcode},
                )

    def _watch_search(
        self,
        proc: multiprocessing.process.BaseProcess,
        job: Job,
        start_nonce: int,
        results: Any,
    ) -> None:
        log.info(
            "Worker %d: starting search job=%s block=%d nonce=%d",
            self.slot_id,
            job.job_id,
            job.block_number,
            start_nonce,
        )
        try:
            candidate, attempts = self._await_outcome(proc, results)
            with self._lock:
                self._attempts += attempts
            if candidate is None:
                log.debug(
                    "Worker %d: search for job %s cancelled after %d attempts",
                    self.slot_id,
                    job.job_id,
                    attempts,
                )
                return
            log.info(
                "Worker %d: valid solution found for job %s nonce=%d after %d attempts",
                self.slot_id,
                job.job_id,
                candidate.nonce,
                attempts,
            )
            if self._submit is not None:
                deliver_candidate(self._submit, candidate, self.slot_id)
        except Exception as exc:
            log.error("Worker %d: search for job %s failed: %s", self.slot_id, job.job_id, exc, exc_info=True)
        finally:
            proc.join(timeout=1.0)
            results.close()

    def run(self) -> None:
        while True:
            job = self._next_job()
            if job is None:
                break
            self._preempt()
            self._launch(job)
        self._preempt()
        log.debug("Worker %d: slot stopped", self.slot_id)
