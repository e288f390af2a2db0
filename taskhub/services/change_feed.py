"""
In-process change feed.

Subscribers register for a table (optionally with a row predicate) and are
called with a ``ChangeEvent`` for every committed insert, update or delete
of that table made through the ORM session.

Lifecycle:
    after_flush          rows touched by the flush are snapshotted and queued
                         on the session, tagged with the innermost open
                         transaction
    after_soft_rollback  queued events of the rolled-back transaction (and of
                         any savepoint inside it) are discarded
    after_commit         the outermost commit delivers the queue

Callbacks run after the commit has completed and must not use the session
that produced the event. A callback that raises is logged; other
subscribers still run.

Writes that bypass the unit of work (``UPDATE ... WHERE`` statements) are
queued explicitly with ``record_change``.

Usage:
    from taskhub.services.change_feed import change_feed

    sub_id = change_feed.subscribe("task_workflow_steps", on_step,
                                   predicate=lambda row: row["task_id"] == 7)
    change_feed.unsubscribe(sub_id)
"""

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, scoped_session

logger = logging.getLogger(__name__)

_QUEUE_KEY = "taskhub.change_feed.pending"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    op: str  # insert | update | delete
    row: dict
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class _Subscription:
    id: str
    table: str
    callback: object
    predicate: object = None


def _snapshot(obj) -> dict:
    state = inspect(obj)
    return {attr.key: getattr(obj, attr.key) for attr in state.mapper.column_attrs}


def _current_transaction(session):
    return session.get_nested_transaction() or session.get_transaction()


def record_change(session, table, op, row):
    """Queue an event for a write the ORM did not see."""
    if isinstance(session, scoped_session):
        session = session()
    session.info.setdefault(_QUEUE_KEY, []).append(
        (_current_transaction(session), ChangeEvent(table=table, op=op, row=dict(row)))
    )


class ChangeFeed:
    def __init__(self):
        self._subs: dict[str, _Subscription] = {}
        self._lock = threading.Lock()

    # ── Subscriptions ────────────────────────────────────────────────────

    def subscribe(self, table, callback, predicate=None) -> str:
        sub = _Subscription(id=uuid.uuid4().hex, table=table, callback=callback, predicate=predicate)
        with self._lock:
            self._subs[sub.id] = sub
        return sub.id

    def unsubscribe(self, sub_id) -> bool:
        with self._lock:
            return self._subs.pop(sub_id, None) is not None

    def clear(self):
        with self._lock:
            self._subs.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subs)

    # ── Session hooks ────────────────────────────────────────────────────

    def install(self, target=Session):
        """Attach the feed to a Session class (or sessionmaker). Idempotent."""
        for name, fn in (
            ("after_flush", self._on_flush),
            ("after_soft_rollback", self._on_rollback),
            ("after_commit", self._on_commit),
        ):
            if not event.contains(target, name, fn):
                event.listen(target, name, fn)

    def _on_flush(self, session, flush_context):
        txn = _current_transaction(session)
        queue = session.info.setdefault(_QUEUE_KEY, [])
        for op, objs in (("insert", session.new), ("update", session.dirty), ("delete", session.deleted)):
            for obj in objs:
                table = getattr(obj, "__tablename__", None)
                if table is None:
                    continue
                if op == "update" and not session.is_modified(obj, include_collections=False):
                    continue
                queue.append((txn, ChangeEvent(table=table, op=op, row=_snapshot(obj))))

    def _on_rollback(self, session, previous_transaction):
        queue = session.info.get(_QUEUE_KEY)
        if not queue:
            return
        if not previous_transaction.nested:
            session.info.pop(_QUEUE_KEY, None)
            return
        kept = []
        for txn, evt in queue:
            if _is_within(txn, previous_transaction):
                continue
            kept.append((txn, evt))
        session.info[_QUEUE_KEY] = kept

    def _on_commit(self, session):
        queue = session.info.pop(_QUEUE_KEY, None)
        if not queue:
            return
        for _, evt in queue:
            self.publish(evt)

    # ── Delivery ─────────────────────────────────────────────────────────

    def publish(self, evt: ChangeEvent):
        with self._lock:
            subs = [s for s in self._subs.values() if s.table == evt.table]
        for sub in subs:
            try:
                if sub.predicate is not None and not sub.predicate(evt.row):
                    continue
                sub.callback(evt)
            except Exception:
                logger.exception("Change feed subscriber %s failed on %s %s",
                                 sub.id, evt.op, evt.table)


def _is_within(txn, ancestor):
    while txn is not None:
        if txn is ancestor:
            return True
        txn = txn.parent
    return False


class IdempotentConsumer:
    """Wrap a callback so each ``event_id`` is handled at most once.

    Remembers the last ``max_seen`` ids.
    """

    def __init__(self, callback, max_seen=10_000):
        self._callback = callback
        self._seen = OrderedDict()
        self._max_seen = max_seen
        self._lock = threading.Lock()

    def __call__(self, evt: ChangeEvent) -> bool:
        with self._lock:
            if evt.event_id in self._seen:
                return False
            self._seen[evt.event_id] = True
            if len(self._seen) > self._max_seen:
                self._seen.popitem(last=False)
        self._callback(evt)
        return True


change_feed = ChangeFeed()
