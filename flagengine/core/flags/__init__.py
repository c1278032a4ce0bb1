"""Feature Flags Module.

Provides flag evaluation and propagation:
- Deterministic percentage rollouts and weighted variants
- Strict precedence evaluation (overrides, tenant/user lists, schedules)
- Two-tier caching with cross-instance invalidation
- Audited mutations and an emergency kill switch
"""

from flagengine.core.flags.hashing import (
    BUCKET_COUNT,
    compute_rollout_hash,
    generate_flag_salt,
    select_variant,
)
from flagengine.core.flags.definition import (
    BooleanRule,
    EvaluationContext,
    EvaluationReason,
    EvaluationResult,
    FlagDefinition,
    FlagRule,
    FlagSnapshot,
    FlagType,
    Override,
    OverrideScope,
    PercentageRule,
    ScheduleRule,
    TenantListRule,
    UserListRule,
    VariantRule,
    is_valid_flag_key,
)
from flagengine.core.flags.store import (
    FlagStore,
    InMemoryFlagStore,
)
from flagengine.core.flags.cache import FlagCache
from flagengine.core.flags.evaluator import (
    EvaluationMetrics,
    Evaluator,
    decide,
)
from flagengine.core.flags.service import (
    FlagService,
    load_flag_definitions,
)
from flagengine.core.flags.engine import FlagEngine

__all__ = [
    # Hashing
    "BUCKET_COUNT",
    "compute_rollout_hash",
    "generate_flag_salt",
    "select_variant",
    # Model
    "BooleanRule",
    "EvaluationContext",
    "EvaluationReason",
    "EvaluationResult",
    "FlagDefinition",
    "FlagRule",
    "FlagSnapshot",
    "FlagType",
    "Override",
    "OverrideScope",
    "PercentageRule",
    "ScheduleRule",
    "TenantListRule",
    "UserListRule",
    "VariantRule",
    "is_valid_flag_key",
    # Store
    "FlagStore",
    "InMemoryFlagStore",
    # Cache
    "FlagCache",
    # Evaluation
    "EvaluationMetrics",
    "Evaluator",
    "decide",
    # Mutations
    "FlagService",
    "load_flag_definitions",
    # Wiring
    "FlagEngine",
]
