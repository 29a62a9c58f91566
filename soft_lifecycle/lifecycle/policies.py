"""
Dependent policies declared on relations.

Policies live in the ``info`` dict of SQLAlchemy relationships, so the whole
policy table of a model can be inspected without touching the database:

    class Post(Base, DestroyedAtMixin):
        comments = relationship(
            "Comment", back_populates="post", info=dependent("destroy")
        )
        categorizations = relationship(
            "Categorization", info=dependent("hard_delete")
        )

    PolicyTable.for_model(Post).dependents()
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from sqlalchemy import inspect
from sqlalchemy.orm import Mapper, RelationshipProperty, object_session, relationship

from .exceptions import DetachedRecordError, PolicyResolutionError

DEPENDENT_KEY = "lifecycle_dependent"
COUNTER_CACHE_KEY = "lifecycle_counter_cache"
INCLUDE_DESTROYED_KEY = "lifecycle_include_destroyed"
POLYMORPHIC_KEY = "lifecycle_polymorphic"

DESTROYED_AT = "destroyed_at"


class Dependent(str, Enum):
    """How an owner's lifecycle transition affects a related record."""

    DESTROY = "destroy"  # cascade or hard_delete, chosen by the target type
    CASCADE = "cascade"
    HARD_DELETE = "hard_delete"
    NONE = "none"


def dependent(
    policy: Union[str, Dependent] = Dependent.DESTROY,
    counter_cache: Optional[str] = None,
    include_destroyed: bool = False,
) -> Dict[str, Any]:
    """Build the relationship ``info`` dict declaring a dependent policy."""
    info: Dict[str, Any] = {DEPENDENT_KEY: Dependent(policy)}
    if counter_cache:
        info[COUNTER_CACHE_KEY] = counter_cache
    if include_destroyed:
        info[INCLUDE_DESTROYED_KEY] = True
    return info


def counter_cache(name: str) -> Dict[str, Any]:
    """Relationship ``info`` for a counter cache without a dependent policy."""
    return {COUNTER_CACHE_KEY: name}


def traverse_destroyed() -> Dict[str, Any]:
    """Relationship ``info`` for a relation that also loads destroyed members."""
    return {INCLUDE_DESTROYED_KEY: True}


def is_lifecycle_enabled(model: Any) -> bool:
    """Whether a mapped class (or instance) declares ``destroyed_at``."""
    cls = model if isinstance(model, type) else type(model)
    mapper = inspect(cls, raiseerr=False)
    if not isinstance(mapper, Mapper):
        return False
    return mapper.has_property(DESTROYED_AT)


def identity_of(record: Any) -> Tuple[Any, ...]:
    """Primary key of a record, read from its identity key once persistent."""
    state = inspect(record)
    if state.identity is not None:
        return tuple(state.identity)
    return tuple(state.mapper.primary_key_from_instance(record))


def resolve_polymorphic_type(model: Type[Any], type_name: str, label: str) -> Type[Any]:
    """Find the mapped class named ``type_name`` in the registry of ``model``."""
    for mapper in inspect(model).registry.mappers:
        if mapper.class_.__name__ == type_name:
            return mapper.class_
    raise PolicyResolutionError(label, f"unknown type {type_name!r}")


class PolymorphicReference:
    """
    To-one reference to an owner of any mapped type.

    The referencing model declares ``<name>_type`` and ``<name>_id`` columns;
    the concrete owner class is looked up by name in the model's registry
    whenever the reference is read or cascaded through.

        class Like(Base, DestroyedAtMixin):
            likeable_type = mapped_column(String(50))
            likeable_id = mapped_column(Integer)
            likeable = PolymorphicReference("likeable")
    """

    def __init__(self, name: str, policy: Union[str, Dependent] = Dependent.NONE):
        self.name = name
        self.type_attr = f"{name}_type"
        self.id_attr = f"{name}_id"
        self.policy = Dependent(policy)
        self.attr = name

    def __set_name__(self, owner: Type[Any], attr: str) -> None:
        self.attr = attr

    def __get__(self, instance: Any, owner: Type[Any]) -> Any:
        if instance is None:
            return self

        target = self.resolve_type(instance)
        if target is None:
            return None

        session = object_session(instance)
        if session is None:
            raise DetachedRecordError(type(instance).__name__)
        return session.get(target, getattr(instance, self.id_attr))

    def __set__(self, instance: Any, value: Any) -> None:
        if value is None:
            setattr(instance, self.type_attr, None)
            setattr(instance, self.id_attr, None)
            return

        identity = identity_of(value)
        if identity[0] is None:
            raise ValueError(
                f"{type(value).__name__} must be flushed before it can be "
                f"referenced by {self.name}"
            )
        setattr(instance, self.type_attr, type(value).__name__)
        setattr(instance, self.id_attr, identity[0])

    def resolve_type(self, instance: Any) -> Optional[Type[Any]]:
        """Concrete class of the referenced owner, or None when unset."""
        type_name = getattr(instance, self.type_attr)
        if type_name is None or getattr(instance, self.id_attr) is None:
            return None
        return resolve_polymorphic_type(
            type(instance), type_name, f"{type(instance).__name__}.{self.attr}"
        )


def polymorphic_relationship(
    target: str,
    name: str,
    discriminator: str,
    uselist: bool = True,
    policy: Union[str, Dependent] = Dependent.DESTROY,
    counter_cache: Optional[str] = None,
    owner_key: str = "id",
    **kwargs: Any,
) -> Any:
    """
    Owner side of a polymorphic dependent.

    Joins ``target.<name>_type == discriminator`` and
    ``target.<name>_id == <discriminator>.<owner_key>``. The relationship is
    view-only: members are attached by assigning the
    :class:`PolymorphicReference` on the target.
    """
    primaryjoin = (
        f"and_({target}.{name}_type == '{discriminator}', "
        f"foreign({target}.{name}_id) == {discriminator}.{owner_key})"
    )
    info = dependent(policy, counter_cache=counter_cache)
    info[POLYMORPHIC_KEY] = name
    return relationship(
        target,
        primaryjoin=primaryjoin,
        uselist=uselist,
        viewonly=True,
        info=info,
        **kwargs,
    )


@dataclass(frozen=True)
class RelationPolicy:
    """One row of a model's policy table."""

    owner: Type[Any]
    name: str
    declared: Dependent
    to_many: bool
    counter_cache: Optional[str] = None
    include_destroyed: bool = False
    prop: Optional[RelationshipProperty] = None
    reference: Optional[PolymorphicReference] = None

    @property
    def label(self) -> str:
        return f"{self.owner.__name__}.{self.name}"

    @property
    def polymorphic(self) -> bool:
        return self.reference is not None or (
            self.prop is not None and POLYMORPHIC_KEY in self.prop.info
        )

    @property
    def direction(self) -> str:
        if self.prop is None:
            return "MANYTOONE"
        return self.prop.direction.name

    def target_for(self, record: Any) -> Optional[Type[Any]]:
        """Resolve the concrete target class for ``record``'s members."""
        if self.reference is not None:
            return self.reference.resolve_type(record)
        assert self.prop is not None
        return self.prop.mapper.class_

    def resolve(self, owner_enabled: bool, target: Type[Any]) -> Dependent:
        """
        Decide the effective policy for one cascade step.

        Args:
            owner_enabled: False when the owner is being hard-deleted, which
                forces hard deletion of every declared dependent
            target: Resolved concrete target class

        Returns:
            CASCADE, HARD_DELETE or NONE

        Raises:
            PolicyResolutionError: ``cascade`` declared for a target without
                ``destroyed_at``
        """
        if self.declared == Dependent.NONE:
            return Dependent.NONE
        if not owner_enabled or self.declared == Dependent.HARD_DELETE:
            return Dependent.HARD_DELETE

        target_enabled = is_lifecycle_enabled(target)
        if self.declared == Dependent.CASCADE and not target_enabled:
            raise PolicyResolutionError(
                self.label, f"{target.__name__} does not declare {DESTROYED_AT}"
            )
        return Dependent.CASCADE if target_enabled else Dependent.HARD_DELETE


class PolicyTable:
    """All relation declarations of a mapped class."""

    _cache: Dict[Type[Any], "PolicyTable"] = {}

    def __init__(self, model: Type[Any], relations: List[RelationPolicy]):
        self.model = model
        self.relations = relations

    @classmethod
    def for_model(cls, model: Type[Any]) -> "PolicyTable":
        """Build (once) and return the policy table for ``model``."""
        table = cls._cache.get(model)
        if table is None:
            table = cls(model, cls._collect(model))
            cls._cache[model] = table
        return table

    @classmethod
    def clear_cache(cls) -> None:
        cls._cache.clear()

    @staticmethod
    def _collect(model: Type[Any]) -> List[RelationPolicy]:
        mapper = inspect(model)
        relations = []

        for prop in mapper.relationships:
            info = prop.info or {}
            relations.append(
                RelationPolicy(
                    owner=model,
                    name=prop.key,
                    declared=Dependent(info.get(DEPENDENT_KEY, Dependent.NONE)),
                    to_many=bool(prop.uselist),
                    counter_cache=info.get(COUNTER_CACHE_KEY),
                    include_destroyed=bool(info.get(INCLUDE_DESTROYED_KEY, False)),
                    prop=prop,
                )
            )

        seen = set()
        for klass in model.__mro__:
            for attr, value in vars(klass).items():
                if isinstance(value, PolymorphicReference) and attr not in seen:
                    seen.add(attr)
                    relations.append(
                        RelationPolicy(
                            owner=model,
                            name=attr,
                            declared=value.policy,
                            to_many=False,
                            reference=value,
                        )
                    )

        return relations

    def get(self, name: str) -> RelationPolicy:
        for relation in self.relations:
            if relation.name == name:
                return relation
        raise KeyError(f"{self.model.__name__} has no relation {name!r}")

    def dependents(self) -> List[RelationPolicy]:
        """Relations whose declared policy is not ``none``."""
        return [r for r in self.relations if r.declared != Dependent.NONE]

    def rows(self) -> List[Dict[str, Any]]:
        """Plain rows for display."""
        return [
            {
                "relation": r.name,
                "policy": r.declared.value,
                "direction": r.direction,
                "to_many": r.to_many,
                "polymorphic": r.polymorphic,
                "counter_cache": r.counter_cache,
                "include_destroyed": r.include_destroyed,
            }
            for r in self.relations
        ]
