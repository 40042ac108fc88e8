"""
Worker pool tests: per-caller serialization, callbacks, and session wiring via attach().
"""
from __future__ import annotations

import threading
import time
from datetime import date

import pytest

from core.models import EventType, InboundEvent, SessionState
from decision.confidence import ConfidenceScorer
from decision.decision_engine import DecisionEngine
from decision.validator import DomainValidator
from pipeline.extractor import StructuredExtractor
from pipeline.intake_pipeline import IntakePipeline
from pipeline.orchestrator import FallbackOrchestrator
from pipeline.worker_pool import IntakeWorkerPool
from providers.gateway import ProviderGateway
from session.state_machine import SessionStateMachine
from session.store import InMemorySessionStore
from fakes import FakeLLMProvider, FakeRecognitionProvider, RecordingTransport, invoice_payload, llm_json
from utils.config import LLMConfig


class SlowPipeline:
    """Records how many runs overlap per caller."""

    def __init__(self, delay: float = 0.05) -> None:
        self.delay = delay
        self._lock = threading.Lock()
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}
        self.calls: list[str] = []

    def process(self, data, kind_hint="auto", *, document_id=None, caller_id="", cancel=None, transaction_value=None):
        with self._lock:
            self.active[caller_id] = self.active.get(caller_id, 0) + 1
            self.max_active[caller_id] = max(self.max_active.get(caller_id, 0), self.active[caller_id])
            self.calls.append(document_id)
        time.sleep(self.delay)
        with self._lock:
            self.active[caller_id] -= 1
        return document_id


def test_same_caller_runs_one_at_a_time() -> None:
    pipeline = SlowPipeline()
    with IntakeWorkerPool(pipeline, max_workers=4) as pool:
        jobs = [pool.submit("alice", b"x", document_id=f"a{n}") for n in range(3)]
        jobs += [pool.submit("bob", b"x", document_id=f"b{n}") for n in range(2)]
        assert pool.busy("alice")
        results = [j.result(timeout=5) for j in jobs]
    assert results == ["a0", "a1", "a2", "b0", "b1"]
    assert pipeline.max_active == {"alice": 1, "bob": 1}
    assert not pool.busy("alice")


def test_callbacks_receive_results_and_errors() -> None:
    class Flaky(SlowPipeline):
        def process(self, data, kind_hint="auto", **kwargs):
            if data == b"bad":
                raise RuntimeError("decoder crashed")
            return super().process(data, kind_hint, **kwargs)

    done, failed = [], []
    pool = IntakeWorkerPool(
        Flaky(delay=0.0),
        max_workers=2,
        on_complete=lambda job, result: done.append(result),
        on_error=lambda job, exc: failed.append((job.document_id, str(exc))),
    )
    pool.submit("c", b"ok", document_id="good")
    pool.submit("c", b"bad", document_id="broken")
    pool.shutdown(wait=True)
    assert done == ["good"]
    assert failed == [("broken", "decoder crashed")]


def test_cancel_sets_the_token() -> None:
    pool = IntakeWorkerPool(SlowPipeline(delay=0.2), max_workers=1)
    first = pool.submit("c", b"x", document_id="first")
    second = pool.submit("c", b"x", document_id="second")
    second.cancel("caller left")
    assert second.token.cancelled
    assert second.token.reason == "caller left"
    first.result(timeout=5)
    pool.shutdown(wait=True)


def test_session_and_pool_round_trip() -> None:
    with ProviderGateway(max_workers=2) as gateway:
        pipeline = IntakePipeline(
            orchestrator=FallbackOrchestrator(gateway, [FakeRecognitionProvider("tesseract", text="TAX INVOICE")]),
            extractor=StructuredExtractor(FakeLLMProvider([llm_json(invoice_payload())]), LLMConfig(retry_delay_sec=0.0)),
            validator=DomainValidator(today=lambda: date(2024, 7, 1)),
            scorer=ConfidenceScorer(),
            engine=DecisionEngine(),
        )
        store = InMemorySessionStore()
        transport = RecordingTransport()
        machine = SessionStateMachine(store, transport=transport)
        pool = IntakeWorkerPool(pipeline, max_workers=2)
        machine.attach(pool)

        reply = machine.handle(InboundEvent("caller-1", EventType.MEDIA, payload=b"jpeg-bytes", message_id="m1"))
        assert reply.outcome == "accepted"
        pool.shutdown(wait=True)

    assert store.get("caller-1").state is SessionState.AWAITING_CONFIRMATION
    assert [r.outcome for r in transport.sent] == ["accepted", "awaiting_confirmation"]
    assert "auto-approved" in transport.sent[-1].text


class TimedPipeline(SlowPipeline):
    """Records when each document started, relative to construction."""

    def __init__(self, delay: float) -> None:
        super().__init__(delay)
        self.t0 = time.monotonic()
        self.started: dict[str, float] = {}

    def process(self, data, kind_hint="auto", *, document_id=None, **kwargs):
        with self._lock:
            self.started[document_id] = time.monotonic() - self.t0
        return super().process(data, kind_hint, document_id=document_id, **kwargs)


def test_busy_caller_does_not_starve_other_callers() -> None:
    pipeline = TimedPipeline(delay=0.3)
    with IntakeWorkerPool(pipeline, max_workers=2) as pool:
        alice = [pool.submit("alice", b"x", document_id=f"a{n}") for n in range(3)]
        bob = pool.submit("bob", b"x", document_id="b0")
        assert bob.result(timeout=5) == "b0"
        bob_started = pipeline.started["b0"]
        for job in alice:
            job.result(timeout=5)
    assert bob_started < 0.15
    assert pipeline.max_active == {"alice": 1, "bob": 1}
    assert pipeline.started["a0"] < pipeline.started["a1"] < pipeline.started["a2"]


def test_idle_callers_leave_no_state_behind() -> None:
    pool = IntakeWorkerPool(SlowPipeline(delay=0.0), max_workers=4)
    jobs = [pool.submit(f"caller-{n}", b"x", document_id=f"d{n}") for n in range(20)]
    for job in jobs:
        job.result(timeout=5)
    pool.shutdown(wait=True)
    assert pool.active_callers() == 0
    assert not pool.busy("caller-0")


def test_submit_after_shutdown_is_refused() -> None:
    pool = IntakeWorkerPool(SlowPipeline(delay=0.0), max_workers=1)
    pool.shutdown(wait=True)
    with pytest.raises(RuntimeError):
        pool.submit("c", b"x")
