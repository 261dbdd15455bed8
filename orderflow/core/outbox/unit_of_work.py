"""
Unit of Work

Combines aggregate persistence with outbox appends in a single transaction
to guarantee atomicity: either the state change and its events are both
committed, or neither is.
"""

import logging
from typing import Dict, List, Optional, Tuple

from ..database.adapter import DatabaseAdapter, DatabaseSession, get_database
from ..domain.aggregate import AggregateRoot
from ..errors import OutboxError
from ..events.models import DomainEvent
from .models import OutboxRecord
from .store import OutboxStore

logger = logging.getLogger(__name__)


class Repository:
    """
    Base class for aggregate repositories bound to a unit of work.

    Subclasses implement `_insert`, `_update` and `_load`. Loaded and added
    aggregates are tracked, so their state and buffered events are written
    when the unit of work commits; `save()` writes one aggregate early.
    """

    def __init__(self, uow: "UnitOfWork"):
        self.uow = uow

    @property
    def session(self) -> DatabaseSession:
        return self.uow.session

    def add(self, aggregate: AggregateRoot) -> None:
        """Register a newly created aggregate."""
        self.uow.track(aggregate, self, new=True)

    async def get(self, aggregate_id: str) -> Optional[AggregateRoot]:
        aggregate = await self._load(aggregate_id)
        if aggregate is not None:
            self.uow.track(aggregate, self)
        return aggregate

    async def save(self, aggregate: AggregateRoot) -> None:
        """Persist the aggregate and append its events now."""
        if not self.uow.is_tracked(aggregate):
            self.uow.track(aggregate, self)
        await self.uow.flush(aggregate)

    async def _load(self, aggregate_id: str) -> Optional[AggregateRoot]:
        raise NotImplementedError

    async def _insert(self, aggregate: AggregateRoot) -> None:
        raise NotImplementedError

    async def _update(self, aggregate: AggregateRoot, expected_version: int) -> None:
        """Write state guarded by the stored version; raise ConcurrencyConflict on mismatch."""
        raise NotImplementedError


class UnitOfWork:
    """
    One database transaction spanning aggregate writes and outbox appends.

    Usage:
        async with UnitOfWork(db) as uow:
            order = Order.create(customer_id="c-1", total_cents=1200)
            uow.orders.add(order)
        # Order row and OrderCreated outbox record commit together

    Inside a transaction someone else owns (e.g. a consumer handler), use
    `UnitOfWork.for_session(session)`: events are appended to that
    transaction and commit or roll back with it.
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        store: Optional[OutboxStore] = None,
        session: Optional[DatabaseSession] = None,
    ):
        self.db = db
        self.store = store
        self._session = session
        self._owns_transaction = session is None
        self._transaction = None
        # id(aggregate) -> (aggregate, repository, is_new)
        self._tracked: Dict[int, Tuple[AggregateRoot, Optional[Repository], bool]] = {}
        self._events: List[OutboxRecord] = []
        self.committed = False

    @classmethod
    def for_session(
        cls,
        session: DatabaseSession,
        store: Optional[OutboxStore] = None,
    ) -> "UnitOfWork":
        """Join an already open transaction instead of starting one."""
        return cls(store=store, session=session)

    @property
    def session(self) -> DatabaseSession:
        if self._session is None:
            raise OutboxError("Unit of work is not active")
        return self._session

    async def __aenter__(self):
        if self._owns_transaction:
            if self.db is None:
                self.db = await get_database()
            self._transaction = self.db.transaction()
            self._session = await self._transaction.__aenter__()
        if self.store is None:
            self.store = OutboxStore(self.db)
        self._tracked = {}
        self._events = []
        self.committed = False
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            try:
                await self.flush()
            except BaseException as e:
                await self._finish(type(e), e, e.__traceback__)
                raise
        await self._finish(exc_type, exc_val, exc_tb)
        if exc_type is None:
            self.committed = self._owns_transaction
        else:
            # Rolled back, nothing was emitted
            self._events = []
        return False

    async def _finish(self, exc_type, exc_val, exc_tb) -> None:
        self._tracked = {}
        if self._transaction is not None:
            transaction, self._transaction = self._transaction, None
            self._session = None
            await transaction.__aexit__(exc_type, exc_val, exc_tb)

    def track(
        self,
        aggregate: AggregateRoot,
        repository: Optional[Repository] = None,
        new: bool = False,
    ) -> None:
        self._tracked[id(aggregate)] = (aggregate, repository, new)

    def is_tracked(self, aggregate: AggregateRoot) -> bool:
        return id(aggregate) in self._tracked

    def collect(self, aggregate: AggregateRoot) -> None:
        """
        Register an aggregate whose state the caller persists itself.

        Only its buffered events are appended on commit.
        """
        if not self.is_tracked(aggregate):
            self.track(aggregate)

    async def flush(self, aggregate: Optional[AggregateRoot] = None) -> None:
        """Write tracked aggregates with buffered events, then append those events."""
        if aggregate is not None:
            entries = [self._tracked[id(aggregate)]]
        else:
            entries = list(self._tracked.values())

        for tracked, repository, is_new in entries:
            if not tracked.pending_events and not is_new:
                continue
            if repository is not None:
                if is_new:
                    await repository._insert(tracked)
                else:
                    await repository._update(tracked, tracked.persisted_version)
            events = tracked.pull_events()
            self._events.extend(await self.store.append_many(self.session, events))
            # Once written, the aggregate is no longer new
            self._tracked[id(tracked)] = (tracked, repository, False)

    async def append(self, event: DomainEvent) -> OutboxRecord:
        """Append a standalone event to the outbox in this transaction."""
        record = await self.store.append(self.session, event)
        self._events.append(record)
        return record

    @property
    def emitted_events(self) -> List[OutboxRecord]:
        """Outbox records written in this unit of work."""
        return self._events.copy()

