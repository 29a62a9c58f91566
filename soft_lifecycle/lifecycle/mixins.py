"""
SQLAlchemy mixin and session listeners for the destroyed_at lifecycle.

Usage:
    class Post(Base, DestroyedAtMixin):
        __tablename__ = "posts"
        id = Column(Integer, primary_key=True)
        comments = relationship("Comment", info=dependent("destroy"))

    post.destroy()
    Post.destroyed().all(session)
    post.restore()
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, event, inspect
from sqlalchemy.orm import Mapped, Mapper, Session, mapped_column, object_session

from ..config import get_config
from .counters import adjust_dependent_counter, counter_bindings, expire_counters
from .exceptions import DetachedRecordError
from .hooks import discard_commit_hooks, run_commit_hooks
from .models import TransitionResult
from .policies import is_lifecycle_enabled
from .scoping import (
    LifecycleSelect,
    Visibility,
    apply_default_scope,
    include_destroyed_options,
    related_select,
)
from .services import (
    INSERTED_DESTROYED_KEY,
    STAGED_KEY,
    WRITTEN_KEY,
    LifecycleService,
    expire_rolled_back_writes,
    stage_destruction,
)

STALE_COUNTERS_KEY = "lifecycle_stale_counters"


def _service_for(record: Any) -> LifecycleService:
    session = object_session(record)
    if session is None:
        raise DetachedRecordError(type(record).__name__)
    return LifecycleService(session)


class DestroyedAtMixin:
    """
    Mixin adding the ``destroyed_at`` lifecycle to SQLAlchemy models.

    Provides:
    - An indexed, nullable ``destroyed_at`` column; null means active
    - destroy / restore / delete with cascades over declared dependents
    - Default scoping: destroyed rows are hidden from ORM queries
    - Explicit query builders for active, destroyed and all rows
    """

    destroyed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    @property
    def is_destroyed(self) -> bool:
        return self.destroyed_at is not None

    @property
    def is_persisted(self) -> bool:
        """
        Whether the row exists in storage.

        Stays True after destroy and turns False after delete. A record
        inserted already destroyed is not persisted until it is restored;
        that flag belongs to this instance, so the same row loaded in another
        session counts as persisted.
        """
        state = inspect(self)
        if not state.has_identity or state.deleted or state.was_deleted:
            return False
        return not state.info.get(INSERTED_DESTROYED_KEY, False)

    def destroy(self, instant: Optional[datetime] = None) -> TransitionResult:
        """
        Destroy this record and cascade to its dependents.

        Args:
            instant: Destruction instant, defaults to now

        Returns:
            Transition result; falsy when the transition was rolled back

        Raises:
            DetachedRecordError: The record is not attached to a session
        """
        return _service_for(self).destroy(self, instant)

    def destroy_or_raise(self, instant: Optional[datetime] = None) -> TransitionResult:
        return _service_for(self).destroy_or_raise(self, instant)

    def restore(self, instant: Optional[datetime] = None) -> TransitionResult:
        """
        Restore this record and the dependents destroyed together with it.

        Args:
            instant: Correlation instant, defaults to this record's destroyed_at

        Returns:
            Transition result; falsy when the transition was rolled back
        """
        return _service_for(self).restore(self, instant)

    def restore_or_raise(self, instant: Optional[datetime] = None) -> TransitionResult:
        return _service_for(self).restore_or_raise(self, instant)

    def delete(self) -> TransitionResult:
        """Remove this record from storage, whatever its lifecycle state."""
        return _service_for(self).delete(self)

    def mark_for_destruction(self, instant: Optional[datetime] = None) -> datetime:
        """Stage destruction at ``instant`` for the next flush or commit."""
        return stage_destruction(self, instant)

    @property
    def marked_for_destruction(self) -> bool:
        return STAGED_KEY in inspect(self).info

    def related(self, name: str) -> LifecycleSelect:
        """Query builder over the members of relation ``name``."""
        return related_select(self, name)

    @classmethod
    def active(cls) -> LifecycleSelect:
        return LifecycleSelect(cls, Visibility.ACTIVE)

    @classmethod
    def destroyed(cls, at: Optional[datetime] = None) -> LifecycleSelect:
        """Destroyed rows; with ``at``, only those destroyed at exactly that instant."""
        return LifecycleSelect(cls, Visibility.DESTROYED, at=at)

    @classmethod
    def unscoped(cls) -> LifecycleSelect:
        return LifecycleSelect(cls, Visibility.ALL)

    @classmethod
    def get_unscoped(cls, session: Session, pk: Any) -> Optional[Any]:
        """Primary key lookup that also finds destroyed rows."""
        return session.get(cls, pk, execution_options=include_destroyed_options())


# Session and mapper listeners


def _default_scope(execute_state: Any) -> None:
    apply_default_scope(execute_state, DestroyedAtMixin)


def _flag_inserted_destroyed(mapper: Any, connection: Any, target: Any) -> None:
    if target.destroyed_at is not None:
        inspect(target).info[INSERTED_DESTROYED_KEY] = True


def _adjust_counters(connection: Any, target: Any, delta: int) -> None:
    if not get_config().counter_cache_enabled:
        return
    bindings = counter_bindings(type(target))
    if not bindings:
        return
    if is_lifecycle_enabled(target) and target.destroyed_at is not None:
        return

    session = object_session(target)
    for binding in bindings:
        stale = adjust_dependent_counter(connection, binding, target, delta, session)
        if stale is not None and session is not None:
            session.info.setdefault(STALE_COUNTERS_KEY, []).append(stale)


def _count_insert(mapper: Any, connection: Any, target: Any) -> None:
    _adjust_counters(connection, target, 1)


def _count_delete(mapper: Any, connection: Any, target: Any) -> None:
    _adjust_counters(connection, target, -1)


def _apply_staged_on_flush(session: Session, flush_context: Any, instances: Any) -> None:
    LifecycleService(session).apply_staged()


def _apply_staged_on_commit(session: Session) -> None:
    if session.in_nested_transaction():
        return
    if session.info.get(STAGED_KEY):
        LifecycleService(session).apply_staged()


def _expire_flushed_counters(session: Session, flush_context: Any) -> None:
    expire_counters(session, session.info.pop(STALE_COUNTERS_KEY, []))


def _after_commit(session: Session) -> None:
    # Released savepoints also emit after_commit
    if session.in_nested_transaction():
        return
    run_commit_hooks(session)


def _after_soft_rollback(session: Session, previous_transaction: Any) -> None:
    discard_commit_hooks(session, previous_transaction)
    if previous_transaction.nested:
        expire_rolled_back_writes(session, previous_transaction)


def _after_transaction_end(session: Session, transaction: Any) -> None:
    if transaction.parent is None:
        discard_commit_hooks(session)
        for record in session.info.pop(STAGED_KEY, []):
            inspect(record).info.pop(STAGED_KEY, None)
        session.info.pop(STALE_COUNTERS_KEY, None)
        session.info.pop(WRITTEN_KEY, None)


_registered = False

_LISTENERS = [
    (Session, "do_orm_execute", _default_scope, {}),
    (DestroyedAtMixin, "before_insert", _flag_inserted_destroyed, {"propagate": True}),
    (Mapper, "after_insert", _count_insert, {}),
    (Mapper, "before_delete", _count_delete, {}),
    (Session, "before_flush", _apply_staged_on_flush, {}),
    (Session, "before_commit", _apply_staged_on_commit, {}),
    (Session, "after_flush_postexec", _expire_flushed_counters, {}),
    (Session, "after_commit", _after_commit, {}),
    (Session, "after_soft_rollback", _after_soft_rollback, {}),
    (Session, "after_transaction_end", _after_transaction_end, {}),
]


def register_lifecycle_listeners() -> None:
    """
    Register SQLAlchemy event listeners for the lifecycle.

    Called on import of :mod:`soft_lifecycle.lifecycle`; calling it again
    is harmless.
    """
    global _registered

    if _registered:
        return
    for target, identifier, fn, kwargs in _LISTENERS:
        event.listen(target, identifier, fn, **kwargs)
    _registered = True
