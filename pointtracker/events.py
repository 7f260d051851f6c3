"""Domain events and the after-commit dispatch queue.

The workflow service publishes one typed event per transition:

- AssignmentCreated:       a ledger row was written (pending or auto-verified)
- AssignmentStatusChanged: a pending row was approved or rejected

publish() only parks the event on the current SQLAlchemy session. When
that session commits, the parked events move onto an in-process queue;
when the outer transaction rolls back they are discarded, so nothing is
ever dispatched for work that did not commit.

Consumers register per event type (see notification_service.HANDLERS).
With EVENTS_ASYNC on, a daemon worker drains the queue inside its own
app context. Otherwise the queue is drained after each request and
explicitly by CLI commands and tests via bus.drain().
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import event as sa_event

from pointtracker.extensions import db

logger = logging.getLogger(__name__)

_PENDING_KEY = "pointtracker.pending_events"


@dataclass(frozen=True)
class AssignmentCreated:
    """A point assignment row was created.

    ``status`` is the row's status at creation time (pending or verified).
    """

    assignment_id: str
    status: str


@dataclass(frozen=True)
class AssignmentStatusChanged:
    """A pending assignment was approved (verified) or rejected."""

    assignment_id: str
    previous_status: str
    status: str


class EventBus:
    """Registration table of {event type -> handlers} plus the commit queue."""

    def __init__(self):
        self._handlers = {}
        self._queue = queue.Queue()
        self._app = None
        self._worker: Optional[threading.Thread] = None

    # ── Setup ──────────────────────────────────────────────

    def init_app(self, app):
        self._app = app
        app.extensions["event_bus"] = self

        if app.config.get("EVENTS_ASYNC"):
            self._start_worker()
        else:
            app.after_request(self._drain_after_request)

    def subscribe(self, event_type, handler):
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def handlers_for(self, event_type):
        return list(self._handlers.get(event_type, []))

    # ── Producer side ─────────────────────────────────────

    def publish(self, evt):
        """Park an event until the current transaction commits."""
        db.session.info.setdefault(_PENDING_KEY, []).append(evt)

    def _on_commit(self, session):
        # Releasing a SAVEPOINT also fires after_commit; wait for the outer commit.
        if session.in_nested_transaction():
            return
        for evt in session.info.pop(_PENDING_KEY, []):
            self._queue.put(evt)

    def _on_rollback(self, session, previous_transaction):
        # Savepoint rollbacks (audit writes) keep the outer events alive.
        if previous_transaction.nested:
            return
        dropped = session.info.pop(_PENDING_KEY, [])
        if dropped:
            logger.info(f"Discarded {len(dropped)} event(s) from rolled-back transaction")

    # ── Consumer side ─────────────────────────────────────

    def drain(self):
        """Dispatch every queued event in the calling thread.

        Must run inside an app context. Returns the number of events handled.
        """
        handled = 0
        while True:
            try:
                evt = self._queue.get_nowait()
            except queue.Empty:
                return handled
            self._dispatch(evt)
            handled += 1

    def clear(self):
        """Drop everything still queued (used between tests)."""
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def pending_count(self):
        return self._queue.qsize()

    def _dispatch(self, evt):
        for handler in self.handlers_for(type(evt)):
            try:
                handler(evt)
            except Exception:
                logger.exception(
                    f"Event handler {getattr(handler, '__name__', handler)} "
                    f"failed for {evt}"
                )

    def _drain_after_request(self, response):
        self.drain()
        return response

    def _start_worker(self):
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(
            target=self._run_worker, name="pointtracker-events", daemon=True
        )
        self._worker.start()

    def _run_worker(self):
        while True:
            evt = self._queue.get()
            with self._app.app_context():
                self._dispatch(evt)


bus = EventBus()

sa_event.listen(db.session, "after_commit", bus._on_commit)
sa_event.listen(db.session, "after_soft_rollback", bus._on_rollback)
