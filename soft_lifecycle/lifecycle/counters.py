"""Counter caches of active dependents kept on owner records."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type

from sqlalchemy import case, inspect, update
from sqlalchemy.orm import MANYTOONE, ONETOMANY, RelationshipProperty, Session

from .policies import COUNTER_CACHE_KEY, RelationPolicy, identity_of

logger = logging.getLogger(__name__)

StaleCounter = Tuple[Any, str]

_bindings_cache: Dict[Type[Any], List["CounterBinding"]] = {}


@dataclass(frozen=True)
class CounterBinding:
    """A counter on the owner of a many-to-one relation of a dependent type."""

    relation: RelationshipProperty
    attr: str

    @property
    def owner(self) -> Type[Any]:
        return self.relation.mapper.class_


def counter_bindings(model: Type[Any]) -> List[CounterBinding]:
    """
    Counters that transitions of ``model`` records must keep current.

    A counter is bound to the many-to-one side when it is declared there, or
    when it is declared on the one-to-many relation that back-populates it.
    """
    bindings = _bindings_cache.get(model)
    if bindings is not None:
        return bindings

    bindings = []
    for rel in inspect(model).relationships:
        if rel.direction is not MANYTOONE:
            continue
        name = (rel.info or {}).get(COUNTER_CACHE_KEY)
        if name is None and rel.back_populates:
            reverse = rel.mapper.get_property(rel.back_populates)
            name = (reverse.info or {}).get(COUNTER_CACHE_KEY)
        if name is not None:
            bindings.append(CounterBinding(relation=rel, attr=name))

    _bindings_cache[model] = bindings
    return bindings


def owner_side_counter(relation: RelationPolicy) -> Optional[str]:
    """
    Counter the owner's cascade must adjust itself.

    Only a one-to-many relation without an inverse many-to-one qualifies;
    otherwise the inverse side already maintains the counter.
    """
    prop = relation.prop
    if relation.counter_cache is None or prop is None:
        return None
    if prop.direction is not ONETOMANY or prop.back_populates:
        return None
    return relation.counter_cache


def _bump(executor: Any, model: Type[Any], criteria: List[Any], attr: str, delta: int) -> None:
    column = inspect(model).get_property(attr).columns[0]
    value = column + delta
    stmt = (
        update(column.table)
        .where(*criteria)
        .values({column: case((value < 0, 0), else_=value)})
    )
    executor.execute(stmt)


def _identity(
    session: Optional[Session], model: Type[Any], pairs: List[Tuple[Any, Any]]
) -> Optional[Any]:
    if session is None:
        return None
    identity = []
    for col in inspect(model).primary_key:
        values = [value for remote, value in pairs if remote is col]
        if not values:
            return None
        identity.append(values[0])
    key = inspect(model).identity_key_from_primary_key(identity)
    return session.identity_map.get(key)


def adjust_dependent_counter(
    executor: Any,
    binding: CounterBinding,
    record: Any,
    delta: int,
    session: Optional[Session] = None,
) -> Optional[StaleCounter]:
    """
    Apply ``delta`` to the owner counter of ``record`` through ``binding``.

    Args:
        executor: Session or Connection the UPDATE runs on
        binding: Counter binding of the record's type
        record: Dependent whose state changed
        delta: +1 or -1
        session: Session whose identity map may hold the owner

    Returns:
        The loaded owner and counter attribute to expire, if any
    """
    record_mapper = inspect(type(record))
    criteria = []
    pairs = []
    for local, remote in binding.relation.local_remote_pairs:
        value = getattr(record, record_mapper.get_property_by_column(local).key)
        if value is None:
            return None
        criteria.append(remote == value)
        pairs.append((remote, value))

    _bump(executor, binding.owner, criteria, binding.attr, delta)
    logger.debug(f"{binding.owner.__name__}.{binding.attr} {delta:+d} via {type(record).__name__}")

    owner = _identity(session, binding.owner, pairs)
    return (owner, binding.attr) if owner is not None else None


def adjust_owner_counter(
    session: Session, owner: Any, attr: str, delta: int
) -> Optional[StaleCounter]:
    """Apply ``delta`` to a counter on ``owner`` identified by primary key."""
    if delta == 0:
        return None
    mapper = inspect(type(owner))
    identity = identity_of(owner)
    criteria = [col == value for col, value in zip(mapper.primary_key, identity)]
    _bump(session, type(owner), criteria, attr, delta)
    logger.debug(f"{type(owner).__name__}.{attr} {delta:+d}")
    return (owner, attr)


def expire_counters(session: Session, stale: List[StaleCounter]) -> None:
    """Expire counter attributes so the next read reflects storage."""
    for owner, attr in stale:
        state = inspect(owner)
        if state.persistent and state.session_id == session.hash_key:
            session.expire(owner, [attr])
