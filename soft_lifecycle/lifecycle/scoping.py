"""
Default visibility of destroyed records.

Every ORM SELECT issued through a session hides destroyed rows of
lifecycle-enabled entities. Two ways exist to see them:

* the ``include_destroyed`` execution option on a statement, and
* :class:`LifecycleSelect`, which states its visibility explicitly:

    Post.active().where(Post.title == "draft").all(session)
    Post.destroyed(at=instant).count(session)
    post.related("comments").unscoped().all(session)
"""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Sequence, Type

from sqlalchemy import func, select
from sqlalchemy.orm import (
    ORMExecuteState,
    RelationshipProperty,
    Session,
    with_loader_criteria,
    with_parent,
)
from sqlalchemy.sql import Select

from ..config import get_config
from .exceptions import NotLifecycleEnabledError
from .policies import DESTROYED_AT, INCLUDE_DESTROYED_KEY, is_lifecycle_enabled
from .timestamps import normalize_instant


class Visibility(str, Enum):
    """Which lifecycle states a query returns."""

    ACTIVE = "active"
    DESTROYED = "destroyed"
    ALL = "all"


def include_destroyed_options() -> dict:
    """Execution options that bypass the default scope."""
    return {get_config().include_destroyed_option: True}


def _relationship_in_path(execute_state: ORMExecuteState) -> Optional[RelationshipProperty]:
    path = execute_state.loader_strategy_path
    if path is None:
        return None
    for element in reversed(path.path):
        if isinstance(element, RelationshipProperty):
            return element
    return None


def apply_default_scope(execute_state: ORMExecuteState, mixin: Type[Any]) -> None:
    """
    Add ``destroyed_at IS NULL`` for every ``mixin`` entity of a SELECT.

    Attribute refreshes are left alone so an expired destroyed record can
    still be reloaded. Relationship loads are filtered too, unless the
    relationship is declared to traverse destroyed members.
    """
    if not execute_state.is_select or execute_state.is_column_load:
        return
    if execute_state.execution_options.get(get_config().include_destroyed_option):
        return

    if execute_state.is_relationship_load:
        prop = _relationship_in_path(execute_state)
        if prop is not None and prop.info.get(INCLUDE_DESTROYED_KEY):
            return

    execute_state.statement = execute_state.statement.options(
        with_loader_criteria(
            mixin,
            lambda cls: cls.destroyed_at.is_(None),
            include_aliases=True,
            propagate_to_loaders=False,
        )
    )


class LifecycleSelect:
    """
    A SELECT of one lifecycle-enabled model with explicit visibility.

    Instances are immutable; ``where`` and the visibility methods return new
    builders, so a base query can be shared.
    """

    def __init__(
        self,
        model: Type[Any],
        visibility: Visibility = Visibility.ACTIVE,
        at: Optional[datetime] = None,
        criteria: Sequence[Any] = (),
    ):
        if visibility == Visibility.DESTROYED and not is_lifecycle_enabled(model):
            raise NotLifecycleEnabledError(model.__name__, "destroyed scope")
        self.model = model
        self.visibility = visibility
        self.at = normalize_instant(at) if at is not None else None
        self.criteria = tuple(criteria)

    def _copy(self, **changes: Any) -> "LifecycleSelect":
        values = {
            "model": self.model,
            "visibility": self.visibility,
            "at": self.at,
            "criteria": self.criteria,
        }
        values.update(changes)
        return LifecycleSelect(**values)

    def where(self, *criteria: Any) -> "LifecycleSelect":
        """Add predicates, combined with AND."""
        return self._copy(criteria=self.criteria + criteria)

    def active(self) -> "LifecycleSelect":
        return self._copy(visibility=Visibility.ACTIVE, at=None)

    def destroyed(self, at: Optional[datetime] = None) -> "LifecycleSelect":
        """Only destroyed rows; with ``at``, only rows destroyed at exactly that instant."""
        return self._copy(visibility=Visibility.DESTROYED, at=at)

    def unscoped(self) -> "LifecycleSelect":
        return self._copy(visibility=Visibility.ALL, at=None)

    def statement(self) -> Select:
        """The SQLAlchemy statement, carrying its own visibility predicates."""
        stmt = select(self.model).where(*self.criteria)

        if is_lifecycle_enabled(self.model):
            column = getattr(self.model, DESTROYED_AT)
            if self.visibility == Visibility.ACTIVE:
                stmt = stmt.where(column.is_(None))
            elif self.visibility == Visibility.DESTROYED:
                if self.at is not None:
                    stmt = stmt.where(column == self.at)
                else:
                    stmt = stmt.where(column.is_not(None))

        return stmt.execution_options(**include_destroyed_options())

    def all(self, session: Session) -> List[Any]:
        return list(session.scalars(self.statement()).all())

    def first(self, session: Session) -> Optional[Any]:
        return session.scalars(self.statement().limit(1)).first()

    def count(self, session: Session) -> int:
        stmt = (
            select(func.count())
            .select_from(self.statement().subquery())
            .execution_options(**include_destroyed_options())
        )
        return session.scalar(stmt) or 0

    def __repr__(self) -> str:
        at = f", at={self.at.isoformat()}" if self.at is not None else ""
        return f"<LifecycleSelect {self.model.__name__} {self.visibility.value}{at}>"


def related_select(record: Any, name: str) -> LifecycleSelect:
    """
    Members of ``record``'s relation ``name`` as a :class:`LifecycleSelect`.

    The default visibility follows the relation: active members only, or
    all members for a relation declared to traverse destroyed records.
    """
    prop = record.__mapper__.get_property(name)
    if not isinstance(prop, RelationshipProperty):
        raise ValueError(f"{type(record).__name__}.{name} is not a relationship")

    visibility = (
        Visibility.ALL if prop.info.get(INCLUDE_DESTROYED_KEY) else Visibility.ACTIVE
    )
    return LifecycleSelect(
        prop.mapper.class_,
        visibility=visibility,
        criteria=(with_parent(record, prop.class_attribute),),
    )
