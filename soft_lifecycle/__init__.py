"""
Soft Lifecycle Toolkit - reversible destruction for SQLAlchemy models.

Records are never removed when destroyed: they receive a ``destroyed_at``
instant, disappear from ordinary queries and can be restored later. Destroy
and restore travel along declared relations, so a whole aggregate can be
destroyed and brought back in one call.

Key Features
------------
* **destroyed_at lifecycle**: destroy, restore and delete on any model
* **Default scoping**: destroyed rows are hidden unless asked for
* **Dependent policies**: cascade, hard delete or leave related records alone
* **Correlated restore**: only dependents destroyed together come back
* **Counter caches**: cached counts of active dependents stay correct
* **Lifecycle hooks**: before/after destroy and restore, plus after commit

Quick Start
-----------
>>> from soft_lifecycle import DestroyedAtMixin, dependent
>>>
>>> class Post(Base, DestroyedAtMixin):
...     __tablename__ = "posts"
...     id = Column(Integer, primary_key=True)
...     comments = relationship("Comment", info=dependent("destroy"))
>>>
>>> post.destroy()
>>> Post.destroyed().all(session)
>>> post.restore()

Documentation
-------------
See README.md for configuration, policies and the command-line tools.
"""

__version__ = "1.0.0"

from .config import LifecycleConfig, configure, get_config, set_config
from .lifecycle import (
    CallbackAbort,
    Dependent,
    DestroyedAtMixin,
    LifecycleError,
    LifecycleEvent,
    LifecycleService,
    PolicyResolutionError,
    PolicyTable,
    PolymorphicReference,
    TransitionResult,
    counter_cache,
    dependent,
    lifecycle_hook,
    polymorphic_relationship,
    register_hook,
    traverse_destroyed,
)

__all__ = [
    # Lifecycle
    "DestroyedAtMixin",
    "LifecycleService",
    "TransitionResult",
    # Policies
    "Dependent",
    "PolicyTable",
    "PolymorphicReference",
    "dependent",
    "counter_cache",
    "traverse_destroyed",
    "polymorphic_relationship",
    # Hooks
    "LifecycleEvent",
    "lifecycle_hook",
    "register_hook",
    # Exceptions
    "LifecycleError",
    "CallbackAbort",
    "PolicyResolutionError",
    # Configuration
    "LifecycleConfig",
    "get_config",
    "set_config",
    "configure",
]
