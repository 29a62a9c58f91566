"""
Lifecycle Module - reversible destruction of relational records.

Provides the ``destroyed_at`` mixin, dependent policies, default scoping,
counter caches, lifecycle hooks and the service running cascades.
"""

from .counters import counter_bindings
from .exceptions import (
    CallbackAbort,
    DetachedRecordError,
    LifecycleError,
    NotLifecycleEnabledError,
    PolicyResolutionError,
)
from .hooks import LifecycleEvent, clear_hooks, lifecycle_hook, register_hook
from .mixins import DestroyedAtMixin, register_lifecycle_listeners
from .models import RecordRef, TransitionAction, TransitionResult
from .policies import (
    Dependent,
    PolicyTable,
    PolymorphicReference,
    RelationPolicy,
    counter_cache,
    dependent,
    is_lifecycle_enabled,
    polymorphic_relationship,
    traverse_destroyed,
)
from .scoping import LifecycleSelect, Visibility
from .services import LifecycleService, stage_destruction
from .timestamps import normalize_instant, utc_now

register_lifecycle_listeners()

__all__ = [
    # Mixins
    "DestroyedAtMixin",
    "register_lifecycle_listeners",
    # Services
    "LifecycleService",
    "stage_destruction",
    # Policies
    "Dependent",
    "PolicyTable",
    "RelationPolicy",
    "PolymorphicReference",
    "dependent",
    "counter_cache",
    "traverse_destroyed",
    "polymorphic_relationship",
    "is_lifecycle_enabled",
    "counter_bindings",
    # Scoping
    "LifecycleSelect",
    "Visibility",
    # Hooks
    "LifecycleEvent",
    "lifecycle_hook",
    "register_hook",
    "clear_hooks",
    # Models
    "TransitionResult",
    "TransitionAction",
    "RecordRef",
    # Timestamps
    "utc_now",
    "normalize_instant",
    # Exceptions
    "LifecycleError",
    "CallbackAbort",
    "PolicyResolutionError",
    "DetachedRecordError",
    "NotLifecycleEnabledError",
]
