"""Flag evaluation.

Decisions follow a fixed precedence; the first matching step wins:

 1. unknown, disabled or archived flag     -> default   (disabled)
 2. schedule flag outside its window       -> default   (outside_schedule)
 3. active user override                   -> its value (user_override)
 4. active tenant override                 -> its value (tenant_override)
 5. tenant in disabled_tenants             -> default   (tenant_disabled)
 6. tenant in enabled_tenants              -> True      (tenant_enabled)
 7. user in enabled_users                  -> True      (user_enabled)
 8. percentage flag                        -> bucket < percentage
 9. variant flag                           -> variant name
10. otherwise                              -> default   (default)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from flagengine.core.errors import StoreUnavailableError
from flagengine.core.flags.cache import FlagCache
from flagengine.core.flags.definition import (
    EvaluationContext,
    EvaluationReason,
    EvaluationResult,
    FlagSnapshot,
    OverrideScope,
    PercentageRule,
    ScheduleRule,
    VariantRule,
    is_valid_flag_key,
    utcnow,
)
from flagengine.core.flags.hashing import compute_rollout_hash, select_variant
from flagengine.utils.metrics import flag_evaluations_total

logger = logging.getLogger(__name__)


def decide(snapshot: FlagSnapshot, context: EvaluationContext) -> EvaluationResult:
    """Apply the precedence rules to a loaded snapshot. Pure."""
    key = snapshot.flag_key
    flag = snapshot.definition

    if flag is None:
        return EvaluationResult(key, False, EvaluationReason.DISABLED)
    if not flag.enabled or flag.archived:
        return EvaluationResult(key, flag.default_value, EvaluationReason.DISABLED)

    rule = flag.rule
    if isinstance(rule, ScheduleRule) and not rule.contains(context.timestamp):
        return EvaluationResult(key, flag.default_value, EvaluationReason.OUTSIDE_SCHEDULE)

    override = snapshot.find_override(OverrideScope.USER, context.user_id, context.timestamp)
    if override is not None:
        return EvaluationResult(key, override.value, EvaluationReason.USER_OVERRIDE)

    override = snapshot.find_override(OverrideScope.TENANT, context.tenant_id, context.timestamp)
    if override is not None:
        return EvaluationResult(key, override.value, EvaluationReason.TENANT_OVERRIDE)

    if context.tenant_id in flag.disabled_tenants:
        return EvaluationResult(key, flag.default_value, EvaluationReason.TENANT_DISABLED)
    if context.tenant_id in flag.enabled_tenants:
        return EvaluationResult(key, True, EvaluationReason.TENANT_ENABLED)
    if context.user_id and context.user_id in flag.enabled_users:
        return EvaluationResult(key, True, EvaluationReason.USER_ENABLED)

    if isinstance(rule, PercentageRule):
        bucket = compute_rollout_hash(context.visitor_key, flag.salt)
        return EvaluationResult(
            key, bucket < rule.percentage, EvaluationReason.PERCENTAGE_ROLLOUT, bucket=bucket
        )

    if isinstance(rule, VariantRule):
        variant = select_variant(context.visitor_key, flag.salt, rule.weights)
        return EvaluationResult(
            key, variant, EvaluationReason.VARIANT_SELECTED, variant=variant
        )

    return EvaluationResult(key, flag.default_value, EvaluationReason.DEFAULT)


@dataclass
class EvaluationMetrics:
    """In-process counters for one flag."""
    flag_key: str
    total_evaluations: int = 0
    enabled_count: int = 0
    disabled_count: int = 0
    reason_counts: Dict[str, int] = field(default_factory=dict)
    variant_counts: Dict[str, int] = field(default_factory=dict)
    last_evaluation: Optional[datetime] = None

    @property
    def enabled_rate(self) -> float:
        if self.total_evaluations == 0:
            return 0.0
        return self.enabled_count / self.total_evaluations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag_key": self.flag_key,
            "total_evaluations": self.total_evaluations,
            "enabled_count": self.enabled_count,
            "disabled_count": self.disabled_count,
            "enabled_rate": self.enabled_rate,
            "reason_counts": dict(self.reason_counts),
            "variant_counts": dict(self.variant_counts),
            "last_evaluation": self.last_evaluation.isoformat() if self.last_evaluation else None,
        }


class Evaluator:
    """Evaluates flags for a request context through the flag cache.

    Never writes to the store and never raises for a missing flag or an
    unreachable store.
    """

    def __init__(self, cache: FlagCache):
        self._cache = cache
        self._metrics: Dict[str, EvaluationMetrics] = {}

    async def evaluate(self, flag_key: str, context: EvaluationContext) -> EvaluationResult:
        if not is_valid_flag_key(flag_key):
            flag_evaluations_total.labels(reason=EvaluationReason.DISABLED.value).inc()
            return EvaluationResult(flag_key, False, EvaluationReason.DISABLED)

        try:
            snapshot = await self._cache.get_snapshot(flag_key)
        except StoreUnavailableError as e:
            logger.warning(f"Failing closed for {flag_key}: {e}")
            result = EvaluationResult(
                flag_key,
                self._cache.last_known_default(flag_key),
                EvaluationReason.STORE_UNAVAILABLE,
            )
        else:
            result = decide(snapshot, context)

        flag_evaluations_total.labels(reason=result.reason.value).inc()
        self._record_evaluation(result)
        return result

    async def is_enabled(self, flag_key: str, context: EvaluationContext) -> bool:
        result = await self.evaluate(flag_key, context)
        return result.enabled

    async def get_variant(self, flag_key: str, context: EvaluationContext) -> Optional[str]:
        """Selected variant, or None if the flag did not reach variant selection."""
        result = await self.evaluate(flag_key, context)
        return result.variant

    async def evaluate_all(self, context: EvaluationContext) -> Dict[str, EvaluationResult]:
        """Evaluate every non-archived flag for ``context``."""
        try:
            flags = await self._cache.store.list_flags()
        except (StoreUnavailableError, ConnectionError, OSError) as e:
            logger.warning(f"Cannot list flags for bulk evaluation: {e}")
            return {}

        results = {}
        for flag in flags:
            results[flag.key] = await self.evaluate(flag.key, context)
        return results

    def _record_evaluation(self, result: EvaluationResult) -> None:
        metrics = self._metrics.get(result.flag_key)
        if metrics is None:
            metrics = self._metrics[result.flag_key] = EvaluationMetrics(flag_key=result.flag_key)

        metrics.total_evaluations += 1
        if result.enabled:
            metrics.enabled_count += 1
        else:
            metrics.disabled_count += 1

        reason = result.reason.value
        metrics.reason_counts[reason] = metrics.reason_counts.get(reason, 0) + 1
        if result.variant:
            metrics.variant_counts[result.variant] = metrics.variant_counts.get(result.variant, 0) + 1
        metrics.last_evaluation = utcnow()

    def get_metrics(self, flag_key: str) -> Optional[EvaluationMetrics]:
        return self._metrics.get(flag_key)

    def get_all_metrics(self) -> Dict[str, EvaluationMetrics]:
        return dict(self._metrics)

    def reset_metrics(self) -> None:
        self._metrics.clear()
