"""
Service layer for destroy, restore and delete.

Runs one root transition and its cascade as a single unit: every
``destroyed_at`` write, counter adjustment and hard deletion happens inside a
SAVEPOINT, and a failure anywhere rolls all of it back.
"""

import logging
from datetime import datetime
from typing import Any, List, Optional, Set, Tuple, Type

from sqlalchemy import inspect, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, object_session, with_parent
from sqlalchemy.orm.attributes import set_committed_value

from ..config import LifecycleConfig, get_config
from .counters import (
    StaleCounter,
    adjust_dependent_counter,
    adjust_owner_counter,
    counter_bindings,
    expire_counters,
    owner_side_counter,
)
from .exceptions import DetachedRecordError, LifecycleError, NotLifecycleEnabledError
from .hooks import HookDispatcher, LifecycleEvent, descends_from
from .models import RecordRef, TransitionAction, TransitionResult
from .policies import (
    DESTROYED_AT,
    Dependent,
    PolicyTable,
    RelationPolicy,
    identity_of,
    is_lifecycle_enabled,
)
from .scoping import include_destroyed_options
from .timestamps import normalize_instant, utc_now

logger = logging.getLogger(__name__)

STAGED_KEY = "lifecycle_staged_instant"
INSERTED_DESTROYED_KEY = "lifecycle_inserted_destroyed"
WRITTEN_KEY = "lifecycle_written"


class _Cascade:
    """Bookkeeping for one root transition."""

    def __init__(self, instant: Optional[datetime] = None):
        self.instant = instant
        self.visited: Set[int] = set()
        self.undo: List[Tuple[Any, Optional[datetime]]] = []
        self.stale: List[StaleCounter] = []
        self.transitioned: List[RecordRef] = []
        self.hard_deleted: List[RecordRef] = []
        self.commit_events: List[Tuple[LifecycleEvent, Any]] = []

    def visit(self, record: Any) -> bool:
        """False when ``record`` was already reached in this cascade."""
        key = id(inspect(record))
        if key in self.visited:
            return False
        self.visited.add(key)
        return True

    def stale_counter(self, stale: Optional[StaleCounter]) -> None:
        if stale is not None:
            self.stale.append(stale)

    def revert(self) -> None:
        """Put back the in-memory ``destroyed_at`` of every written record."""
        for record, previous in reversed(self.undo):
            set_committed_value(record, DESTROYED_AT, previous)


class LifecycleService:
    """
    Destroy, restore and delete records of one session.

    Usage:
        service = LifecycleService(session)
        result = service.destroy(post)
        if not result:
            print(result.error)

        service.restore_or_raise(post)
    """

    def __init__(self, session: Session, config: Optional[LifecycleConfig] = None):
        """
        Initialize the lifecycle service.

        Args:
            session: SQLAlchemy session the records belong to
            config: Configuration, defaults to the global one
        """
        self.session = session
        self.config = config or get_config()
        self.hooks = HookDispatcher(session)

    # Public operations

    def destroy(self, record: Any, instant: Optional[datetime] = None) -> TransitionResult:
        """
        Destroy ``record`` and cascade to its dependents.

        Args:
            record: Record to destroy
            instant: Destruction instant, defaults to now

        Returns:
            Result; ``success`` is False if a hook, policy or the store failed
        """
        return self._run(TransitionAction.DESTROY, record, instant, raise_errors=False)

    def destroy_or_raise(
        self, record: Any, instant: Optional[datetime] = None
    ) -> TransitionResult:
        """Like :meth:`destroy`, but a failure propagates as the original exception."""
        return self._run(TransitionAction.DESTROY, record, instant, raise_errors=True)

    def restore(self, record: Any, instant: Optional[datetime] = None) -> TransitionResult:
        """
        Restore ``record`` and the dependents destroyed together with it.

        Args:
            record: Record to restore
            instant: Correlation instant; defaults to the record's own
                ``destroyed_at`` before the restore

        Returns:
            Result; ``success`` is False if a hook, policy or the store failed
        """
        return self._run(TransitionAction.RESTORE, record, instant, raise_errors=False)

    def restore_or_raise(
        self, record: Any, instant: Optional[datetime] = None
    ) -> TransitionResult:
        """Like :meth:`restore`, but a failure propagates as the original exception."""
        return self._run(TransitionAction.RESTORE, record, instant, raise_errors=True)

    def delete(self, record: Any) -> TransitionResult:
        """
        Remove ``record`` from storage, ignoring its lifecycle state.

        No lifecycle hooks run and no dependent policies apply; ordinary ORM
        cascades do. Counter caches still drop by one if the row was active.
        """
        state = inspect(record)
        ref = RecordRef.from_record(record)

        if state.pending:
            self.session.expunge(record)
        elif state.persistent:
            self.session.delete(record)
            self.session.flush()
        else:
            raise DetachedRecordError(type(record).__name__)

        logger.info(f"Deleted {ref}")
        return TransitionResult(
            success=True,
            action=TransitionAction.DELETE,
            record=ref,
            hard_deleted=[ref],
        )

    def mark_for_destruction(
        self, record: Any, instant: Optional[datetime] = None
    ) -> datetime:
        """Stage ``record`` to be destroyed at ``instant`` on the next flush or commit."""
        return stage_destruction(record, instant, self.session, self.config)

    def apply_staged(self) -> int:
        """
        Apply staged destructions of this session.

        Pending records are inserted already destroyed. Persistent records go
        through a full destroy cascade at their staged instant.

        Returns:
            Number of records the staged instants were applied to
        """
        applied = 0

        for record in list(self.session.new):
            state = inspect(record)
            if STAGED_KEY in state.info and is_lifecycle_enabled(record):
                record.destroyed_at = state.info.pop(STAGED_KEY)
                applied += 1

        for record in self.session.info.pop(STAGED_KEY, []):
            state = inspect(record)
            instant = state.info.pop(STAGED_KEY, None)
            if instant is None or not state.persistent:
                continue
            cascade = _Cascade(instant)
            try:
                with self.session.no_autoflush:
                    self._destroy_record(record, cascade)
            except Exception:
                cascade.revert()
                raise
            self._finish(cascade)
            applied += 1
            logger.info(f"Applied staged destruction of {RecordRef.from_record(record)}")

        return applied

    # Transition driver

    def _run(
        self,
        action: TransitionAction,
        record: Any,
        instant: Optional[datetime],
        raise_errors: bool,
    ) -> TransitionResult:
        ref = RecordRef.from_record(record)
        try:
            self._check_attached(record)
            enabled = is_lifecycle_enabled(record)

            if action == TransitionAction.DESTROY:
                if enabled and record.destroyed_at is not None:
                    logger.debug(f"{ref} already destroyed at {record.destroyed_at}")
                    return TransitionResult(
                        success=True,
                        action=action,
                        record=ref,
                        instant=record.destroyed_at,
                        skipped=True,
                    )
                cascade = _Cascade(
                    normalize_instant(instant, self.config)
                    if instant is not None
                    else utc_now(self.config)
                )
            else:
                if not enabled:
                    raise NotLifecycleEnabledError(type(record).__name__)
                prior = (
                    normalize_instant(instant, self.config)
                    if instant is not None
                    else record.destroyed_at
                )
                cascade = _Cascade(prior)

            self.session.flush()
            ref = RecordRef.from_record(record)
            try:
                with self.session.begin_nested():
                    with self.session.no_autoflush:
                        if action == TransitionAction.DESTROY:
                            self._destroy_record(record, cascade)
                        else:
                            self._restore_record(record, cascade)
                    self.session.flush()
            except Exception:
                cascade.revert()
                raise
            self._finish(cascade)

        except (LifecycleError, SQLAlchemyError) as e:
            if raise_errors:
                raise
            logger.warning(f"Failed to {action.value} {ref}: {e}")
            return TransitionResult(
                success=False, action=action, record=ref, error=str(e)
            )

        logger.info(
            f"{action.value.capitalize()} of {ref} affected "
            f"{len(cascade.transitioned)} record(s), "
            f"hard deleted {len(cascade.hard_deleted)}"
        )
        return TransitionResult(
            success=True,
            action=action,
            record=ref,
            instant=cascade.instant,
            transitioned=cascade.transitioned,
            hard_deleted=cascade.hard_deleted,
        )

    def _check_attached(self, record: Any) -> None:
        state = inspect(record)
        if state.deleted or state.was_deleted:
            raise LifecycleError(
                f"{type(record).__name__} has been deleted", str(RecordRef.from_record(record))
            )
        if object_session(record) is not self.session:
            raise DetachedRecordError(type(record).__name__)

    def _finish(self, cascade: _Cascade) -> None:
        expire_counters(self.session, cascade.stale)
        for record, _ in cascade.undo:
            if record.destroyed_at is None:
                inspect(record).info.pop(INSERTED_DESTROYED_KEY, None)

        transaction = (
            self.session.get_nested_transaction() or self.session.get_transaction()
        )
        written = self.session.info.setdefault(WRITTEN_KEY, [])
        written.extend((transaction, record, DESTROYED_AT) for record, _ in cascade.undo)
        written.extend((transaction, owner, attr) for owner, attr in cascade.stale)

        for event, record in cascade.commit_events:
            self.hooks.queue(event, record, transaction)

    # Destroy

    def _destroy_record(self, record: Any, cascade: _Cascade) -> bool:
        """Destroy one record; True if it went from active to destroyed."""
        if not is_lifecycle_enabled(record):
            return self._hard_delete(record, cascade)
        if not cascade.visit(record) or record.destroyed_at is not None:
            return False

        self.hooks.fire(LifecycleEvent.BEFORE_DESTROY, record)
        self._write_destroyed_at(record, cascade.instant, cascade)
        cascade.transitioned.append(RecordRef.from_record(record))
        logger.debug(f"Destroying {type(record).__name__} at {cascade.instant}")

        if self.config.cascade_enabled:
            for relation in PolicyTable.for_model(type(record)).dependents():
                self._cascade_destroy(record, relation, cascade, owner_enabled=True)

        if self.config.counter_cache_enabled:
            for binding in counter_bindings(type(record)):
                cascade.stale_counter(
                    adjust_dependent_counter(
                        self.session, binding, record, -1, self.session
                    )
                )

        self.hooks.fire(LifecycleEvent.AFTER_DESTROY, record)
        cascade.commit_events.append((LifecycleEvent.AFTER_DESTROY_COMMIT, record))
        return True

    def _hard_delete(self, record: Any, cascade: _Cascade) -> bool:
        """Delete one record and, transitively, its declared dependents.

        Returns True if the record counted as active before the delete.
        """
        if not cascade.visit(record):
            return False
        was_active = not is_lifecycle_enabled(record) or record.destroyed_at is None

        self.hooks.fire(LifecycleEvent.BEFORE_DESTROY, record)
        if self.config.cascade_enabled:
            for relation in PolicyTable.for_model(type(record)).dependents():
                self._cascade_destroy(record, relation, cascade, owner_enabled=False)

        cascade.hard_deleted.append(RecordRef.from_record(record))
        self.session.delete(record)
        logger.debug(f"Hard deleting {type(record).__name__}")

        self.hooks.fire(LifecycleEvent.AFTER_DESTROY, record)
        cascade.commit_events.append((LifecycleEvent.AFTER_DESTROY_COMMIT, record))
        return was_active

    def _cascade_destroy(
        self,
        record: Any,
        relation: RelationPolicy,
        cascade: _Cascade,
        owner_enabled: bool,
    ) -> None:
        target = relation.target_for(record)
        if target is None:
            return

        policy = relation.resolve(owner_enabled, target)
        if policy == Dependent.NONE:
            return

        changed = 0
        if policy == Dependent.CASCADE:
            for member in self._members(record, relation, target, active=True):
                if self._destroy_record(member, cascade):
                    changed += 1
        else:
            for member in self._members(record, relation, target):
                if self._hard_delete(member, cascade):
                    changed += 1

        counter = owner_side_counter(relation)
        if counter and self.config.counter_cache_enabled:
            cascade.stale_counter(
                adjust_owner_counter(self.session, record, counter, -changed)
            )

    # Restore

    def _restore_record(self, record: Any, cascade: _Cascade) -> bool:
        """Restore one record; True if it went from destroyed to active."""
        if not cascade.visit(record):
            return False
        was_destroyed = record.destroyed_at is not None

        self.hooks.fire(LifecycleEvent.BEFORE_RESTORE, record)
        if was_destroyed:
            self._write_destroyed_at(record, None, cascade)
            cascade.transitioned.append(RecordRef.from_record(record))
        logger.debug(f"Restoring {type(record).__name__} correlated on {cascade.instant}")

        if cascade.instant is not None and self.config.cascade_enabled:
            for relation in PolicyTable.for_model(type(record)).dependents():
                self._cascade_restore(record, relation, cascade)

        if was_destroyed and self.config.counter_cache_enabled:
            for binding in counter_bindings(type(record)):
                cascade.stale_counter(
                    adjust_dependent_counter(
                        self.session, binding, record, 1, self.session
                    )
                )

        self.hooks.fire(LifecycleEvent.AFTER_RESTORE, record)
        cascade.commit_events.append((LifecycleEvent.AFTER_RESTORE_COMMIT, record))
        return was_destroyed

    def _cascade_restore(
        self, record: Any, relation: RelationPolicy, cascade: _Cascade
    ) -> None:
        target = relation.target_for(record)
        if target is None:
            return
        if relation.resolve(True, target) != Dependent.CASCADE:
            return

        changed = 0
        for member in self._members(record, relation, target, at=cascade.instant):
            if self._restore_record(member, cascade):
                changed += 1

        counter = owner_side_counter(relation)
        if counter and self.config.counter_cache_enabled:
            cascade.stale_counter(
                adjust_owner_counter(self.session, record, counter, changed)
            )

    # Storage helpers

    def _members(
        self,
        record: Any,
        relation: RelationPolicy,
        target: Type[Any],
        active: bool = False,
        at: Optional[datetime] = None,
    ) -> List[Any]:
        """
        Current members of a relation, destroyed ones included.

        Args:
            active: Only members whose ``destroyed_at`` is null
            at: Only members destroyed at exactly this instant
        """
        if relation.reference is not None:
            key = getattr(record, relation.reference.id_attr)
            stmt = select(target).where(inspect(target).primary_key[0] == key)
        else:
            assert relation.prop is not None
            stmt = select(target).where(
                with_parent(record, relation.prop.class_attribute)
            )

        if active:
            stmt = stmt.where(getattr(target, DESTROYED_AT).is_(None))
        elif at is not None:
            stmt = stmt.where(getattr(target, DESTROYED_AT) == at)

        stmt = stmt.execution_options(**include_destroyed_options())
        return list(self.session.scalars(stmt))

    def _write_destroyed_at(
        self, record: Any, value: Optional[datetime], cascade: _Cascade
    ) -> None:
        """Write ``destroyed_at`` without going through ORM update events."""
        mapper = inspect(type(record))
        column = mapper.get_property(DESTROYED_AT).columns[0]
        criteria = [
            col == key for col, key in zip(mapper.primary_key, identity_of(record))
        ]
        self.session.execute(update(column.table).where(*criteria).values({column: value}))

        cascade.undo.append((record, record.destroyed_at))
        set_committed_value(record, DESTROYED_AT, value)


def stage_destruction(
    record: Any,
    instant: Optional[datetime] = None,
    session: Optional[Session] = None,
    config: Optional[LifecycleConfig] = None,
) -> datetime:
    """
    Stage ``record`` for destruction when it is next persisted.

    Args:
        record: Lifecycle-enabled record, new or persistent
        instant: Instant to write, defaults to now
        session: Session of a persistent record, defaults to its own
        config: Configuration, defaults to the global one

    Returns:
        The normalized staged instant

    Raises:
        NotLifecycleEnabledError: The record does not declare destroyed_at
        DetachedRecordError: A persistent record is not attached to a session
    """
    config = config or get_config()
    if not is_lifecycle_enabled(record):
        raise NotLifecycleEnabledError(type(record).__name__, "deferred destruction")

    instant = (
        normalize_instant(instant, config) if instant is not None else utc_now(config)
    )
    state = inspect(record)

    if state.has_identity:
        session = session or object_session(record)
        if session is None:
            raise DetachedRecordError(type(record).__name__)
        staged = session.info.setdefault(STAGED_KEY, [])
        if not any(item is record for item in staged):
            staged.append(record)

    state.info[STAGED_KEY] = instant
    logger.debug(f"Staged {type(record).__name__} for destruction at {instant}")
    return instant


def expire_rolled_back_writes(session: Session, transaction: Any) -> None:
    """
    Expire attributes written inside a savepoint that was rolled back.

    ``destroyed_at`` and counter values are written around the unit of work,
    so a savepoint rollback would otherwise leave them stale in memory.
    """
    written = session.info.get(WRITTEN_KEY)
    if not written:
        return

    kept = []
    for entry in written:
        tagged, record, attr = entry
        if not descends_from(tagged, transaction):
            kept.append(entry)
            continue
        state = inspect(record)
        if state.persistent and state.session_id == session.hash_key:
            session.expire(record, [attr])
    session.info[WRITTEN_KEY] = kept
