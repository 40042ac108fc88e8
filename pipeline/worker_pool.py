"""
Bounded worker pool: documents from different callers run in parallel,
documents from the same caller run one at a time.

Each caller has a FIFO of pending jobs and at most one job on the executor. The next job
is handed over only when the previous one finishes, so no worker ever waits on a busy caller.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass, field
from typing import Callable

from core.models import PipelineResult
from pipeline.intake_pipeline import IntakePipeline
from providers.gateway import CancelToken

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class IntakeJob:
    """Handle for one submitted document. cancel() abandons any in-flight provider call."""

    caller_id: str
    document_id: str
    future: Future
    token: CancelToken = field(default_factory=CancelToken)

    def cancel(self, reason: str = "cancelled by owner") -> None:
        self.token.cancel(reason)
        self.future.cancel()

    def result(self, timeout: float | None = None) -> PipelineResult:
        return self.future.result(timeout=timeout)


@dataclass
class _Pending:
    job: IntakeJob
    data: bytes
    kind_hint: str
    transaction_value: float | None


class IntakeWorkerPool:
    """
    ThreadPoolExecutor front for IntakePipeline.process(). Callers without queued or running
    jobs hold no state in the pool.
    """

    def __init__(
        self,
        pipeline: IntakePipeline,
        max_workers: int = 4,
        *,
        on_complete: Callable[[IntakeJob, PipelineResult], None] | None = None,
        on_error: Callable[[IntakeJob, BaseException], None] | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._max_workers = max(1, int(max_workers))
        self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="intake")
        self._guard = threading.Lock()
        # caller_id -> jobs not yet handed to the executor; present while the caller is active
        self._pending: dict[str, deque[_Pending]] = {}
        self._outstanding: set[IntakeJob] = set()
        self._closed = False
        self.on_complete = on_complete
        self.on_error = on_error

    def busy(self, caller_id: str) -> bool:
        """True while the caller has a queued or running job."""
        with self._guard:
            return caller_id in self._pending

    def active_callers(self) -> int:
        with self._guard:
            return len(self._pending)

    def submit(
        self,
        caller_id: str,
        data: bytes,
        *,
        kind_hint: str = "auto",
        document_id: str | None = None,
        transaction_value: float | None = None,
    ) -> IntakeJob:
        document_id = document_id or uuid.uuid4().hex
        job = IntakeJob(caller_id=caller_id, document_id=document_id, future=Future())
        job.future.add_done_callback(lambda f: self._finish(job, f))
        with self._guard:
            if self._closed:
                raise RuntimeError("cannot submit to a pool that has been shut down")
            queue = self._pending.get(caller_id)
            start = queue is None
            if start:
                queue = self._pending[caller_id] = deque()
            queue.append(_Pending(job, data, kind_hint, transaction_value))
            self._outstanding.add(job)
        logger.info("Submitted document=%s caller=%s queued=%s", document_id, caller_id, not start)
        if start:
            self._dispatch(caller_id)
        return job

    def _dispatch(self, caller_id: str) -> None:
        """Hand the caller's next live job to the executor, or forget the caller."""
        while True:
            with self._guard:
                queue = self._pending.get(caller_id)
                if not queue:
                    self._pending.pop(caller_id, None)
                    return
                pending = queue.popleft()
            if pending.job.future.cancelled():
                continue
            try:
                self._executor.submit(self._run, pending)
                return
            except RuntimeError:
                logger.warning("Executor closed; dropping document=%s caller=%s", pending.job.document_id, caller_id)
                pending.job.future.cancel()

    def _run(self, pending: _Pending) -> None:
        job = pending.job
        try:
            if not job.future.set_running_or_notify_cancel():
                return
            try:
                result = self._pipeline.process(
                    pending.data,
                    pending.kind_hint,
                    document_id=job.document_id,
                    caller_id=job.caller_id,
                    cancel=job.token,
                    transaction_value=pending.transaction_value,
                )
            except BaseException as e:
                job.future.set_exception(e)
            else:
                job.future.set_result(result)
        finally:
            self._dispatch(job.caller_id)

    def _finish(self, job: IntakeJob, future: Future) -> None:
        with self._guard:
            self._outstanding.discard(job)
        if future.cancelled():
            logger.info("Job cancelled document=%s caller=%s", job.document_id, job.caller_id)
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Job failed document=%s caller=%s: %s", job.document_id, job.caller_id, exc)
            if self.on_error is not None:
                self.on_error(job, exc)
            return
        if self.on_complete is not None:
            self.on_complete(job, future.result())

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        with self._guard:
            self._closed = True
            queued = [p.job for q in self._pending.values() for p in q]
            outstanding = [j.future for j in self._outstanding]
        if cancel_pending:
            for job in queued:
                job.future.cancel()
        if wait:
            wait_futures(outstanding)
        self._executor.shutdown(wait=wait, cancel_futures=cancel_pending)

    def __enter__(self) -> IntakeWorkerPool:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()
