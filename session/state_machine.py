"""
Per-caller conversational gate in front of the intake pipeline.

    idle --upload intent--> awaiting_document --media--> processing
    idle --media--> processing  (direct upload)
    processing --pipeline result--> awaiting_confirmation --approve|edit|reject--> idle

Events for one caller are handled under that caller's lock and persisted with
compare-and-set. A non-idle session inactive past the timeout is reset to idle and the
pending document pointer is dropped (the document itself stays in the review store).
"""
from __future__ import annotations

import hashlib
import logging
import re
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterator

from core.exceptions import IntakeError, RateLimitExceeded, SessionExpired
from core.interfaces import ISessionStore, ITransport
from core.models import (
    EventType,
    InboundEvent,
    OutboundReply,
    PipelineResult,
    Session,
    SessionState,
    Verdict,
)
from session.rate_limit import SlidingWindowRateLimiter
from utils.config import SessionConfig

if TYPE_CHECKING:
    from pipeline.worker_pool import IntakeJob, IntakeWorkerPool

logger = logging.getLogger(__name__)

CONFIRMATION_ACTIONS: tuple[str, ...] = ("approve", "edit", "reject")
UPLOAD_INTENTS = frozenset({"upload", "send", "hi", "hello", "hey", "start", "invoice", "bill", "kyc", "pan", "aadhaar"})
CANCEL_INTENTS = frozenset({"cancel", "stop", "reset"})
IDENTITY_WORDS = frozenset({"kyc", "pan", "aadhaar", "identity"})
INVOICE_WORDS = frozenset({"invoice", "bill", "receipt"})
MAX_CAS_ATTEMPTS = 3

HELP_TEXT = "Send 'upload' and then a photo or PDF of your invoice or KYC document."
SEND_DOCUMENT_TEXT = "Please send a clear photo or PDF of the document."
STILL_WAITING_TEXT = "I'm waiting for your document. Send a photo or PDF, or 'cancel' to stop."
RECEIVED_TEXT = "Document received! We're processing it now. You'll be notified once it's ready."
STILL_WORKING_TEXT = "Still working on your previous document. Please wait for the result before sending another."
ALREADY_RECEIVED_TEXT = "We already received this document. No need to send it again."
NOTHING_TO_CONFIRM_TEXT = "There is nothing to confirm right now. " + HELP_TEXT
CONFIRM_HELP_TEXT = "Please reply with approve, edit or reject for the document above."
CANCELLED_TEXT = "Okay, cancelled. " + HELP_TEXT
FAILED_TEXT = "Sorry, we could not process that document. Please try sending it again."
CONFIRMATION_REPLIES = {
    "approve": "Thanks! The document has been confirmed.",
    "edit": "Noted. A reviewer will go through the document and apply your changes.",
    "reject": "Okay, the document has been discarded.",
}

SubmitFn = Callable[[str, str, InboundEvent, str], None]
ConfirmFn = Callable[[Session, str], None]
_Step = tuple["Session | None", "OutboundReply | None", "Callable[[], None] | None"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _words(text: str) -> set[str]:
    return set(re.findall(r"[a-z]+", (text or "").lower()))


def dedup_keys(event: InboundEvent) -> list[str]:
    """Transport message id and content hash; either one seen before marks a duplicate."""
    keys = []
    if event.message_id:
        keys.append(f"id:{event.message_id}")
    if event.payload:
        keys.append("sha256:" + hashlib.sha256(event.payload).hexdigest())
    return keys


def kind_hint_from_text(text: str) -> str:
    words = _words(text)
    if words & IDENTITY_WORDS:
        return "identity"
    if words & INVOICE_WORDS:
        return "invoice"
    return "auto"


def summarize_result(result: PipelineResult) -> str:
    """Short caller-facing summary of a pipeline run."""
    doc = result.document
    lines = []
    if result.degraded:
        lines.append("We could not read this document clearly.")
    elif doc is not None and doc.document_kind == "identity" and doc.identity is not None:
        ident = doc.identity
        lines.append(f"{(ident.id_type or 'ID').upper()} {ident.id_number or '?'} for {ident.holder_name or '?'}")
    elif doc is not None:
        vendor = doc.vendor.legal_name or doc.vendor.gstin or "unknown vendor"
        lines.append(f"Invoice {doc.invoice_number or '?'} from {vendor}: total ₹{doc.tax_summary.grand_total:,.2f}")
    lines.append(f"Confidence: {result.score.overall:.0%}")
    decision = result.decision
    if decision.verdict is Verdict.AUTO_APPROVE:
        lines.append("Status: auto-approved")
    else:
        priority = decision.priority.value if decision.priority else "medium"
        lines.append(f"Status: sent for review ({priority} priority)")
    lines.append("Reply approve, edit or reject.")
    return "\n".join(lines)


class SessionStateMachine:
    """
    Consumes InboundEvents one at a time per caller and returns the OutboundReply
    (also handed to the transport when one is configured).

    submit(caller_id, document_ref, event, kind_hint) is called after a document is
    admitted; the result comes back through complete_processing / fail_processing.
    """

    def __init__(
        self,
        store: ISessionStore,
        config: SessionConfig | None = None,
        *,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        submit: SubmitFn | None = None,
        transport: ITransport | None = None,
        on_confirmation: ConfirmFn | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.config = config or SessionConfig()
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.submit = submit
        self.transport = transport
        self.on_confirmation = on_confirmation
        self._clock = clock
        # caller_id -> [lock, holders + waiters]; entries go away when nobody uses them
        self._locks: dict[str, list[Any]] = {}
        self._locks_guard = threading.Lock()

    @property
    def timeout(self) -> timedelta:
        return timedelta(minutes=self.config.timeout_min)

    @contextmanager
    def _caller_lock(self, caller_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(caller_id)
            if entry is None:
                entry = self._locks[caller_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[caller_id]

    def tracked_callers(self) -> int:
        """Callers with an event currently being handled or waiting for their lock."""
        with self._locks_guard:
            return len(self._locks)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def handle(self, event: InboundEvent) -> OutboundReply:
        """Apply one inbound event to the caller's session."""
        now = event.received_at or self._clock()

        def step(current: Session) -> _Step:
            try:
                return self._step(current, event, now)
            except SessionExpired as e:
                logger.info("Session expired caller=%s state=%s", current.caller_id, current.state.value)
                reset = self._reset(current, now)
                return reset, self._reply(current, f"{e} Send 'upload' to start again.", outcome="session_expired"), None
            except RateLimitExceeded as e:
                logger.warning("Rate limit hit caller=%s retry_after=%.0fs", current.caller_id, e.retry_after_sec)
                return replace(current, last_activity=now), self._reply(current, str(e), outcome="rate_limited"), None

        reply, after = self._update(event.caller_id, step)
        if reply is None:
            raise IntakeError(f"No reply produced for {event.event_type.value} event from {event.caller_id}")
        self._send(reply)
        if after is not None:
            after()
        return reply

    def complete_processing(
        self, caller_id: str, result: PipelineResult, document_ref: str | None = None
    ) -> OutboundReply | None:
        """processing -> awaiting_confirmation. Stale results (session moved on) are dropped."""
        now = self._clock()

        def step(current: Session) -> _Step:
            if not self._is_current(current, document_ref):
                logger.info("Dropping stale result caller=%s ref=%s", caller_id, document_ref)
                return None, None, None
            context = dict(current.context)
            context["last_result"] = {
                "document_id": result.document_id,
                "trace_id": result.trace_id,
                "verdict": result.decision.verdict.value,
                "overall": round(result.score.overall, 4),
                "review_item_id": result.review_item_id,
            }
            updated = replace(current, state=SessionState.AWAITING_CONFIRMATION, last_activity=now, context=context)
            reply = OutboundReply(
                caller_id=caller_id,
                text=summarize_result(result),
                buttons=CONFIRMATION_ACTIONS,
                outcome="awaiting_confirmation",
            )
            return updated, reply, None

        reply, _ = self._update(caller_id, step)
        if reply is not None:
            self._send(reply)
        return reply

    def fail_processing(self, caller_id: str, reason: str = "", document_ref: str | None = None) -> OutboundReply | None:
        """processing -> idle with an apology, for runs that could not produce any result."""
        now = self._clock()

        def step(current: Session) -> _Step:
            if not self._is_current(current, document_ref):
                return None, None, None
            logger.warning("Processing failed caller=%s ref=%s reason=%s", caller_id, current.pending_document_ref, reason)
            return self._reset(current, now), self._reply(current, FAILED_TEXT, outcome="failed"), None

        reply, _ = self._update(caller_id, step)
        if reply is not None:
            self._send(reply)
        return reply

    def attach(self, pool: IntakeWorkerPool) -> None:
        """Route admitted documents to a worker pool and its results back into this machine."""

        def submit(caller_id: str, ref: str, event: InboundEvent, kind_hint: str) -> None:
            pool.submit(caller_id, event.payload, document_id=ref, kind_hint=kind_hint)

        def on_complete(job: IntakeJob, result: PipelineResult) -> None:
            self.complete_processing(job.caller_id, result, document_ref=job.document_id)

        def on_error(job: IntakeJob, exc: BaseException) -> None:
            self.fail_processing(job.caller_id, reason=str(exc), document_ref=job.document_id)

        self.submit = submit
        pool.on_complete = on_complete
        pool.on_error = on_error

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _update(
        self, caller_id: str, step: Callable[[Session], _Step]
    ) -> tuple[OutboundReply | None, Callable[[], None] | None]:
        """Run step on a fresh copy and store the result with CAS, retrying on conflict."""
        with self._caller_lock(caller_id):
            for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
                current = self.store.get(caller_id) or Session(caller_id=caller_id)
                updated, reply, after = step(current)
                if updated is None:
                    return reply, after
                if self.store.compare_and_set(caller_id, current.version, updated):
                    if updated.state is not current.state:
                        logger.info(
                            "Session caller=%s %s -> %s", caller_id, current.state.value, updated.state.value
                        )
                    return reply, after
                logger.warning("Session CAS conflict caller=%s attempt=%s", caller_id, attempt)
        raise IntakeError(f"Session update for caller {caller_id} kept conflicting")

    def _send(self, reply: OutboundReply) -> None:
        if self.transport is not None:
            self.transport.send(reply)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @staticmethod
    def _reply(session: Session, text: str, *, outcome: str, buttons: tuple[str, ...] = ()) -> OutboundReply:
        return OutboundReply(caller_id=session.caller_id, text=text, buttons=buttons, outcome=outcome)

    @staticmethod
    def _is_current(session: Session, document_ref: str | None) -> bool:
        if session.state is not SessionState.PROCESSING:
            return False
        return document_ref is None or session.pending_document_ref == document_ref

    def _reset(self, session: Session, now: datetime) -> Session:
        context = {k: v for k, v in session.context.items() if k == "seen"}
        return replace(session, state=SessionState.IDLE, pending_document_ref=None, last_activity=now, context=context)

    def _step(self, session: Session, event: InboundEvent, now: datetime) -> _Step:
        if (
            session.state is not SessionState.IDLE
            and session.last_activity is not None
            and now - session.last_activity > self.timeout
        ):
            raise SessionExpired(
                f"Your session expired after {self.config.timeout_min:g} minutes of inactivity.",
            )
        touched = replace(session, last_activity=now, context=dict(session.context))
        handler = {
            SessionState.IDLE: self._on_idle,
            SessionState.AWAITING_DOCUMENT: self._on_awaiting_document,
            SessionState.PROCESSING: self._on_processing,
            SessionState.AWAITING_CONFIRMATION: self._on_awaiting_confirmation,
        }[session.state]
        return handler(touched, event, now)

    def _on_idle(self, s: Session, event: InboundEvent, now: datetime) -> _Step:
        if event.event_type is EventType.MEDIA:
            return self._admit(s, event, now)
        if event.event_type is EventType.BUTTON:
            return s, self._reply(s, NOTHING_TO_CONFIRM_TEXT, outcome="noop"), None
        words = _words(event.text)
        if words & UPLOAD_INTENTS:
            s.context["kind_hint"] = kind_hint_from_text(event.text)
            return replace(s, state=SessionState.AWAITING_DOCUMENT), self._reply(
                s, SEND_DOCUMENT_TEXT, outcome="awaiting_document"
            ), None
        return s, self._reply(s, HELP_TEXT, outcome="help"), None

    def _on_awaiting_document(self, s: Session, event: InboundEvent, now: datetime) -> _Step:
        if event.event_type is EventType.MEDIA:
            return self._admit(s, event, now)
        if event.event_type is EventType.TEXT and _words(event.text) & CANCEL_INTENTS:
            return self._reset(s, now), self._reply(s, CANCELLED_TEXT, outcome="cancelled"), None
        return s, self._reply(s, STILL_WAITING_TEXT, outcome="awaiting_document"), None

    def _on_processing(self, s: Session, event: InboundEvent, now: datetime) -> _Step:
        return s, self._reply(s, STILL_WORKING_TEXT, outcome="still_processing"), None

    def _on_awaiting_confirmation(self, s: Session, event: InboundEvent, now: datetime) -> _Step:
        action = ""
        if event.event_type is EventType.BUTTON:
            action = (event.action or "").strip().lower()
        elif event.event_type is EventType.TEXT:
            text = (event.text or "").strip().lower()
            action = text if text in CONFIRMATION_ACTIONS else ""
        if action not in CONFIRMATION_ACTIONS:
            return s, self._reply(s, CONFIRM_HELP_TEXT, outcome="noop", buttons=CONFIRMATION_ACTIONS), None

        before = replace(s, context=dict(s.context))
        after = None
        if self.on_confirmation is not None:
            hook = self.on_confirmation
            after = lambda: hook(before, action)  # noqa: E731
        return self._reset(s, now), self._reply(s, CONFIRMATION_REPLIES[action], outcome=action), after

    def _admit(self, s: Session, event: InboundEvent, now: datetime) -> _Step:
        """Dedup, rate-limit, then awaiting_document -> processing and hand the bytes over."""
        keys = dedup_keys(event)
        horizon = now.timestamp() - self.config.dedup_window_sec
        seen: dict[str, Any] = {k: t for k, t in dict(s.context.get("seen") or {}).items() if t > horizon}
        if any(k in seen for k in keys):
            s.context["seen"] = seen
            return s, self._reply(s, ALREADY_RECEIVED_TEXT, outcome="duplicate"), None

        self._check_rate(s.caller_id)

        ref = uuid.uuid4().hex
        for k in keys:
            seen[k] = now.timestamp()
        s.context["seen"] = seen
        kind_hint = s.context.pop("kind_hint", None) or kind_hint_from_text(event.text)
        updated = replace(s, state=SessionState.PROCESSING, pending_document_ref=ref)
        logger.info("Admitted document caller=%s ref=%s kind_hint=%s", s.caller_id, ref, kind_hint)

        after = None
        submit = self.submit
        if submit is not None:
            after = lambda: self._submit(submit, s.caller_id, ref, event, kind_hint)  # noqa: E731
        return updated, self._reply(s, RECEIVED_TEXT, outcome="accepted"), after

    def _check_rate(self, caller_id: str) -> None:
        window = self.config.rate_window_sec
        allowed, count = self.rate_limiter.allow(caller_id, self.config.rate_limit_per_hour, window)
        if allowed:
            return
        retry_after = self.rate_limiter.retry_after(caller_id, window)
        minutes = max(1, int(round(retry_after / 60.0)))
        raise RateLimitExceeded(
            f"You've sent {count} documents recently, which is our limit for now. "
            f"Please try again in about {minutes} minute(s).",
            retry_after_sec=retry_after,
        )

    def _submit(self, submit: SubmitFn, caller_id: str, ref: str, event: InboundEvent, kind_hint: str) -> None:
        try:
            submit(caller_id, ref, event, kind_hint)
        except Exception as e:
            logger.exception("Could not hand document to the pipeline caller=%s ref=%s", caller_id, ref)
            self.fail_processing(caller_id, reason=str(e), document_ref=ref)
