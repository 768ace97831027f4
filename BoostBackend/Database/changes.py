# Change notification stream for the boost tables.
# Collects the tables touched by a session (ORM inserts and bulk UPDATE/DELETE)
# and publishes them to subscribers after the commit. Only read-side views
# subscribe; authoritative transitions never depend on it.

import logging
import threading
from typing import Callable, FrozenSet, List, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

log = logging.getLogger("boost")

BOOST_TABLES = frozenset({"boost_slots", "boost_waitlist", "boost_contributions"})
_PENDING = "boost_changed_tables"

Subscriber = Callable[[FrozenSet[str]], None]


class ChangeFeed:
    def __init__(self, tables: FrozenSet[str] = BOOST_TABLES):
        self.tables = tables
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(fn)

        def unsubscribe():
            with self._lock:
                if fn in self._subscribers:
                    self._subscribers.remove(fn)
        return unsubscribe

    def publish(self, tables: FrozenSet[str]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(tables)
            except Exception:
                log.exception("change subscriber failed")

    # ---- session wiring ----

    def _mark(self, session: Session, table: Optional[str]) -> None:
        if table in self.tables:
            session.info.setdefault(_PENDING, set()).add(table)

    def attach(self, factory: sessionmaker) -> sessionmaker:
        """Listen on every session the factory creates."""

        @event.listens_for(factory, "after_flush")
        def _after_flush(session, flush_context):
            for obj in list(session.new) + list(session.dirty) + list(session.deleted):
                self._mark(session, getattr(obj, "__tablename__", None))

        @event.listens_for(factory, "do_orm_execute")
        def _on_execute(state):
            if (state.is_update or state.is_delete) and state.bind_mapper is not None:
                self._mark(state.session, state.bind_mapper.local_table.name)

        @event.listens_for(factory, "after_commit")
        def _after_commit(session):
            changed = session.info.pop(_PENDING, None)
            if changed:
                self.publish(frozenset(changed))

        @event.listens_for(factory, "after_rollback")
        def _after_rollback(session):
            session.info.pop(_PENDING, None)

        return factory


class BoardCache:
    """
    Memoizes a read model until the feed reports a change to a watched table.
    A change that lands while the loader runs leaves the cache stale, so the
    next read reloads.
    """

    def __init__(self, loader: Callable[[], object], feed: ChangeFeed):
        self._loader = loader
        self._lock = threading.Lock()
        self._generation = 0
        self._cached_generation = -1
        self._value = None
        feed.subscribe(self.invalidate)

    def invalidate(self, tables: FrozenSet[str] = BOOST_TABLES) -> None:
        with self._lock:
            self._generation += 1

    def get(self):
        with self._lock:
            if self._cached_generation == self._generation:
                return self._value
            generation = self._generation
        value = self._loader()
        with self._lock:
            self._value = value
            self._cached_generation = generation
        return value
