"""Append-only event log with a global sequence, subscriptions and replay."""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime

from milestone_orchestrator.db.models import Event, FailedAttempt

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], None]


class EventLog:
    """Ordered record of every state change.

    ``append`` is the one serialization point across all entities: the
    append lock makes ``seq`` a true global order. Mutation events carry
    the post-image of each record they change in ``payload["records"]``
    (and removed ``[kind, id]`` pairs in ``payload["deleted"]``), which is
    what replay applies.
    """

    def __init__(self, store, session_id: str | None = None, clock=datetime.now):
        self._store = store
        self.session_id = session_id
        self._clock = clock
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._seq = self._last_seq("event")
        self._attempt_seq = self._last_seq("attempt")

    def _last_seq(self, kind: str) -> int:
        records = self._store.list(kind) + self._store.pending(kind)
        return max((r["seq"] for r in records), default=0)

    @property
    def last_seq(self) -> int:
        return self._seq

    def append(
        self,
        event_type: str,
        entity_id: str,
        payload: dict | None = None,
        records: list[dict] | None = None,
        deleted: list[tuple[str, str]] | None = None,
    ) -> Event:
        event = self._append(event_type, entity_id, payload, records, deleted)
        self.publish(event)
        return event

    def commit(
        self,
        event_type: str,
        entity_id: str,
        records: list[dict],
        payload: dict | None = None,
        deleted: list[tuple[str, str]] | None = None,
        notify: bool = True,
    ) -> Event:
        """Write-ahead mutation: log the post-images, then write them.

        Subscribers run once the records are in place. Callers holding
        entity locks pass ``notify=False`` and ``publish`` after releasing.
        """
        with self._store.writing():
            event = self._append(event_type, entity_id, payload, records, deleted)
            apply_event(self._store, event)
        if notify:
            self.publish(event)
        return event

    def _append(self, event_type, entity_id, payload, records, deleted) -> Event:
        body = dict(payload or {})
        body["records"] = list(records or [])
        body["deleted"] = [list(d) for d in deleted or []]
        with self._lock:
            self._seq += 1
            event = Event(
                seq=self._seq,
                event_type=event_type,
                entity_id=entity_id,
                payload=body,
                session_id=self.session_id,
                timestamp=self._clock(),
            )
            self._store.append_log(event.to_record())
        logger.debug("Event %d %s %s", event.seq, event_type, entity_id)
        return event

    def record_failure(self, operation: str, entity_id: str | None, error: Exception) -> FailedAttempt:
        """Audit a rejected operation. Kept apart from the mutation stream."""
        with self._lock:
            self._attempt_seq += 1
            attempt = FailedAttempt(
                seq=self._attempt_seq,
                operation=operation,
                entity_id=entity_id,
                error=type(error).__name__,
                message=str(error),
                session_id=self.session_id,
                timestamp=self._clock(),
            )
            self._store.append_log(attempt.to_record())
        return attempt

    # ── Queries ─────────────────────────────────────────────────────────

    def events(
        self,
        entity_id: str | None = None,
        after_seq: int = 0,
        event_type: str | None = None,
    ) -> list[Event]:
        filters = {}
        if entity_id is not None:
            filters["entity_id"] = entity_id
        if event_type is not None:
            filters["event_type"] = event_type
        records = self._store.list("event", **filters)
        records += [
            r for r in self._store.pending("event")
            if all(r.get(k) == v for k, v in filters.items())
        ]
        events = [Event.from_record(r) for r in records if r["seq"] > after_seq]
        events.sort(key=lambda e: e.seq)
        return events

    def attempts(self, operation: str | None = None) -> list[FailedAttempt]:
        filters = {"operation": operation} if operation else {}
        records = self._store.list("attempt", **filters) + self._store.pending("attempt")
        attempts = [FailedAttempt.from_record(r) for r in records]
        if operation:
            attempts = [a for a in attempts if a.operation == operation]
        attempts.sort(key=lambda a: a.seq)
        return attempts

    # ── Subscriptions ───────────────────────────────────────────────────

    def subscribe(self, event_type: str, handler: EventHandler):
        """Call ``handler`` after each appended event of ``event_type`` ("*" for all)."""
        self._subscribers[event_type].append(handler)

    def publish(self, event: Event):
        for handler in self._subscribers.get(event.event_type, []) + self._subscribers.get("*", []):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s (seq %d)", event.event_type, event.seq)

    # ── Replay ──────────────────────────────────────────────────────────

    def replay(self, backend, after_seq: int) -> int:
        """Apply the post-images of every event after ``after_seq`` to ``backend``.

        Subscribers are not notified; replay reproduces state, it does not
        re-run side effects. Returns the number of events applied.
        """
        events = self.events(after_seq=after_seq)
        for event in events:
            apply_event(backend, event)
        return len(events)


def apply_event(backend, event: Event):
    for record in event.payload.get("records", []):
        backend.put(record)
    for kind, entity_id in event.payload.get("deleted", []):
        if backend.exists(kind, entity_id):
            backend.delete(kind, entity_id)
