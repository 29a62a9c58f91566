"""
Destroy and restore hooks.

Hooks are plain callables receiving the record. They are declared on the
model with :func:`lifecycle_hook` or attached from outside with
:func:`register_hook`; both are inherited by subclasses:

    class Comment(Base, DestroyedAtMixin):
        @lifecycle_hook(LifecycleEvent.BEFORE_DESTROY)
        def check_locked(self):
            if self.locked:
                raise CallbackAbort("Locked comments cannot be destroyed")

    register_hook(Comment, "after_destroy_commit", notify_moderators)

Commit-scoped hooks are queued on the session and run once the enclosing
transaction commits.
"""

import logging
from enum import Enum
from operator import methodcaller
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

from sqlalchemy.orm import Session, SessionTransaction

logger = logging.getLogger(__name__)

Hook = Callable[[Any], Any]

EVENTS_ATTR = "__lifecycle_events__"
COMMIT_QUEUE_KEY = "lifecycle_commit_hooks"


class LifecycleEvent(str, Enum):
    """Points in a transition where hooks run."""

    BEFORE_DESTROY = "before_destroy"
    AFTER_DESTROY = "after_destroy"
    BEFORE_RESTORE = "before_restore"
    AFTER_RESTORE = "after_restore"
    AFTER_DESTROY_COMMIT = "after_destroy_commit"
    AFTER_RESTORE_COMMIT = "after_restore_commit"

    @property
    def commit_scoped(self) -> bool:
        return self in (
            LifecycleEvent.AFTER_DESTROY_COMMIT,
            LifecycleEvent.AFTER_RESTORE_COMMIT,
        )


_external: Dict[Tuple[Type[Any], LifecycleEvent], List[Hook]] = {}
_resolved: Dict[Tuple[Type[Any], LifecycleEvent], List[Hook]] = {}


def lifecycle_hook(*events: Union[str, LifecycleEvent]) -> Callable[[Hook], Hook]:
    """
    Mark a model method as a hook for one or more lifecycle events.

    Args:
        *events: Event names or :class:`LifecycleEvent` members

    Returns:
        Decorator leaving the method unchanged apart from the marker
    """
    if not events:
        raise ValueError("lifecycle_hook requires at least one event")
    parsed = tuple(LifecycleEvent(event) for event in events)

    def decorator(func: Hook) -> Hook:
        marked = getattr(func, EVENTS_ATTR, ())
        setattr(func, EVENTS_ATTR, marked + parsed)
        return func

    return decorator


def register_hook(
    model: Type[Any], event: Union[str, LifecycleEvent], hook: Hook
) -> None:
    """Attach ``hook`` to ``event`` for ``model`` and its subclasses."""
    _external.setdefault((model, LifecycleEvent(event)), []).append(hook)
    _resolved.clear()


def clear_hooks(model: Optional[Type[Any]] = None) -> None:
    """Remove externally registered hooks, for one model or all of them."""
    if model is None:
        _external.clear()
    else:
        for key in [key for key in _external if key[0] is model]:
            del _external[key]
    _resolved.clear()


def hooks_for(model: Type[Any], event: LifecycleEvent) -> List[Hook]:
    """
    Hooks to run for ``event`` on records of ``model``, base classes first.

    A subclass overriding a decorated method without re-decorating it
    removes that hook.
    """
    key = (model, event)
    hooks = _resolved.get(key)
    if hooks is not None:
        return hooks

    methods: Dict[str, None] = {}
    for klass in reversed(model.__mro__):
        for name, value in vars(klass).items():
            if event in getattr(value, EVENTS_ATTR, ()):
                methods[name] = None
            elif name in methods:
                del methods[name]

    hooks = [methodcaller(name) for name in methods]
    for klass in reversed(model.__mro__):
        hooks.extend(_external.get((klass, event), []))

    _resolved[key] = hooks
    return hooks


class HookDispatcher:
    """Fires hooks for one session and queues the commit-scoped ones."""

    def __init__(self, session: Session):
        self.session = session

    def fire(self, event: LifecycleEvent, record: Any) -> None:
        """Run hooks now; any exception aborts the transition."""
        for hook in hooks_for(type(record), event):
            hook(record)

    def queue(
        self,
        event: LifecycleEvent,
        record: Any,
        transaction: Optional[SessionTransaction] = None,
    ) -> None:
        """Queue a commit-scoped event, tied to the transaction it happened in."""
        if not hooks_for(type(record), event):
            return
        if transaction is None:
            transaction = (
                self.session.get_nested_transaction()
                or self.session.get_transaction()
            )
        pending = self.session.info.setdefault(COMMIT_QUEUE_KEY, [])
        pending.append((transaction, event, record))


def run_commit_hooks(session: Session) -> None:
    """Run queued commit-scoped hooks; failures are logged, not raised."""
    pending = session.info.pop(COMMIT_QUEUE_KEY, [])
    for _, event, record in pending:
        for hook in hooks_for(type(record), event):
            try:
                hook(record)
            except Exception as e:
                logger.warning(
                    f"{event.value} hook {getattr(hook, '__name__', hook)!r} "
                    f"failed for {type(record).__name__}: {e}",
                    exc_info=True,
                )


def descends_from(
    transaction: Optional[SessionTransaction], ancestor: SessionTransaction
) -> bool:
    while transaction is not None:
        if transaction is ancestor:
            return True
        transaction = transaction.parent
    return False


def discard_commit_hooks(
    session: Session, transaction: Optional[SessionTransaction] = None
) -> None:
    """
    Drop queued hooks belonging to a rolled back transaction.

    Args:
        session: Session holding the queue
        transaction: Transaction that rolled back; ``None`` drops everything
    """
    pending = session.info.get(COMMIT_QUEUE_KEY)
    if not pending:
        return
    if transaction is None:
        session.info.pop(COMMIT_QUEUE_KEY, None)
        return
    kept = [entry for entry in pending if not descends_from(entry[0], transaction)]
    if len(kept) != len(pending):
        logger.debug(f"Discarded {len(pending) - len(kept)} commit hook(s) on rollback")
    session.info[COMMIT_QUEUE_KEY] = kept
