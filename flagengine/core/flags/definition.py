"""Flag data model.

Provides:
- Flag definitions as a tagged union over six rule shapes
- Per-user and per-tenant overrides
- Evaluation context and results
- Cacheable snapshots (definition + overrides)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Set, Tuple, Union

from flagengine.core.errors import ConfigurationError
from flagengine.core.flags.hashing import generate_flag_salt

FLAG_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9._]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return as_utc(datetime.fromisoformat(value))


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def is_valid_flag_key(key: Any) -> bool:
    return isinstance(key, str) and FLAG_KEY_PATTERN.match(key) is not None


class FlagType(Enum):
    """Shape of a flag; decides which rule payload is meaningful."""
    BOOLEAN = "boolean"
    PERCENTAGE = "percentage"
    TENANT_LIST = "tenant_list"
    USER_LIST = "user_list"
    SCHEDULE = "schedule"
    VARIANT = "variant"


class OverrideScope(Enum):
    USER = "user"
    TENANT = "tenant"


class EvaluationReason(str, Enum):
    """Which evaluation step produced a result."""
    DISABLED = "disabled"
    OUTSIDE_SCHEDULE = "outside_schedule"
    USER_OVERRIDE = "user_override"
    TENANT_OVERRIDE = "tenant_override"
    TENANT_DISABLED = "tenant_disabled"
    TENANT_ENABLED = "tenant_enabled"
    USER_ENABLED = "user_enabled"
    PERCENTAGE_ROLLOUT = "percentage_rollout"
    VARIANT_SELECTED = "variant_selected"
    DEFAULT = "default"
    STORE_UNAVAILABLE = "store_unavailable"


# Rule payloads. Exactly one is attached to a definition.


@dataclass(frozen=True)
class BooleanRule:
    flag_type: ClassVar[FlagType] = FlagType.BOOLEAN

    def validate(self) -> None:
        pass

    def to_dict(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class PercentageRule:
    percentage: float = 0.0

    flag_type: ClassVar[FlagType] = FlagType.PERCENTAGE

    def validate(self) -> None:
        if isinstance(self.percentage, bool) or not isinstance(self.percentage, (int, float)):
            raise ConfigurationError("Rollout percentage must be a number")
        if not 0 <= self.percentage <= 100:
            raise ConfigurationError(
                f"Rollout percentage must be between 0 and 100, got {self.percentage}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {"percentage": self.percentage}


@dataclass(frozen=True)
class TenantListRule:
    flag_type: ClassVar[FlagType] = FlagType.TENANT_LIST

    def validate(self) -> None:
        pass

    def to_dict(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class UserListRule:
    flag_type: ClassVar[FlagType] = FlagType.USER_LIST

    def validate(self) -> None:
        pass

    def to_dict(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class ScheduleRule:
    """Active inside the half-open window ``[start, end)``; open ends allowed."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    flag_type: ClassVar[FlagType] = FlagType.SCHEDULE

    def validate(self) -> None:
        if self.start is not None and self.end is not None:
            if as_utc(self.start) >= as_utc(self.end):
                raise ConfigurationError("Schedule start must be before end")

    def contains(self, moment: datetime) -> bool:
        moment = as_utc(moment)
        if self.start is not None and moment < as_utc(self.start):
            return False
        if self.end is not None and moment >= as_utc(self.end):
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": _format_datetime(self.start),
            "end": _format_datetime(self.end),
        }


@dataclass(frozen=True)
class VariantRule:
    """Relative variant weights; they need not sum to 100."""

    weights: Dict[str, int] = field(default_factory=dict)

    flag_type: ClassVar[FlagType] = FlagType.VARIANT

    def validate(self) -> None:
        if not self.weights:
            raise ConfigurationError("Variant flags need at least one variant")
        for name, weight in self.weights.items():
            if not name:
                raise ConfigurationError("Variant names must be non-empty")
            if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
                raise ConfigurationError(
                    f"Variant weight for '{name}' must be a non-negative integer"
                )
        if sum(self.weights.values()) <= 0:
            raise ConfigurationError("Variant weights must have a positive total")

    def to_dict(self) -> Dict[str, Any]:
        return {"weights": dict(self.weights)}


FlagRule = Union[
    BooleanRule,
    PercentageRule,
    TenantListRule,
    UserListRule,
    ScheduleRule,
    VariantRule,
]


def rule_from_dict(flag_type: FlagType, data: Dict[str, Any]) -> FlagRule:
    """Rebuild the rule payload for ``flag_type``."""
    if flag_type == FlagType.BOOLEAN:
        return BooleanRule()
    elif flag_type == FlagType.PERCENTAGE:
        return PercentageRule(percentage=data.get("percentage", 0))
    elif flag_type == FlagType.TENANT_LIST:
        return TenantListRule()
    elif flag_type == FlagType.USER_LIST:
        return UserListRule()
    elif flag_type == FlagType.SCHEDULE:
        return ScheduleRule(
            start=_parse_datetime(data.get("start")),
            end=_parse_datetime(data.get("end")),
        )
    elif flag_type == FlagType.VARIANT:
        return VariantRule(weights=dict(data.get("weights", {})))
    raise ConfigurationError(f"Unsupported flag type: {flag_type}")


@dataclass
class FlagDefinition:
    """A flag definition as stored in the flag store.

    ``rule`` selects the flag type. The tenant and user lists apply to
    every type.
    """

    key: str
    rule: FlagRule = field(default_factory=BooleanRule)
    default_value: Any = False
    enabled: bool = True
    archived: bool = False
    salt: str = field(default_factory=generate_flag_salt)
    enabled_tenants: Set[str] = field(default_factory=set)
    disabled_tenants: Set[str] = field(default_factory=set)
    enabled_users: Set[str] = field(default_factory=set)
    name: str = ""
    description: str = ""
    category: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 0  # 0 = never saved
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    created_by: Optional[str] = None

    def __post_init__(self) -> None:
        self.enabled_tenants = set(self.enabled_tenants)
        self.disabled_tenants = set(self.disabled_tenants)
        self.enabled_users = set(self.enabled_users)
        if not self.name:
            self.name = self.key

    @property
    def flag_type(self) -> FlagType:
        return self.rule.flag_type

    def validate(self) -> None:
        """Check invariants; raises ConfigurationError."""
        if not is_valid_flag_key(self.key):
            raise ConfigurationError(
                f"Invalid flag key '{self.key}': must match {FLAG_KEY_PATTERN.pattern}"
            )
        if not self.salt:
            raise ConfigurationError(f"Flag '{self.key}' has an empty rollout salt")
        self.rule.validate()
        both = self.enabled_tenants & self.disabled_tenants
        if both:
            raise ConfigurationError(
                f"Tenants both enabled and disabled on '{self.key}': {sorted(both)}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "type": self.flag_type.value,
            "rule": self.rule.to_dict(),
            "default_value": self.default_value,
            "enabled": self.enabled,
            "archived": self.archived,
            "salt": self.salt,
            "enabled_tenants": sorted(self.enabled_tenants),
            "disabled_tenants": sorted(self.disabled_tenants),
            "enabled_users": sorted(self.enabled_users),
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "metadata": self.metadata,
            "version": self.version,
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
            "created_by": self.created_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlagDefinition":
        flag_type = FlagType(data.get("type", FlagType.BOOLEAN.value))
        kwargs: Dict[str, Any] = {}
        if data.get("salt"):
            kwargs["salt"] = data["salt"]
        if data.get("created_at"):
            kwargs["created_at"] = _parse_datetime(data["created_at"])
        if data.get("updated_at"):
            kwargs["updated_at"] = _parse_datetime(data["updated_at"])
        return cls(
            key=data["key"],
            rule=rule_from_dict(flag_type, data.get("rule", {})),
            default_value=data.get("default_value", False),
            enabled=data.get("enabled", True),
            archived=data.get("archived", False),
            enabled_tenants=set(data.get("enabled_tenants", [])),
            disabled_tenants=set(data.get("disabled_tenants", [])),
            enabled_users=set(data.get("enabled_users", [])),
            name=data.get("name", ""),
            description=data.get("description", ""),
            category=data.get("category"),
            metadata=data.get("metadata", {}),
            version=data.get("version", 0),
            created_by=data.get("created_by"),
            **kwargs,
        )


@dataclass
class Override:
    """A forced value for one user or tenant on one flag."""

    scope: OverrideScope
    scope_id: str
    flag_key: str
    value: Any
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def target(self) -> Tuple[OverrideScope, str]:
        return (self.scope, self.scope_id)

    def is_active(self, at: datetime) -> bool:
        if self.expires_at is None:
            return True
        return as_utc(at) < as_utc(self.expires_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope.value,
            "scope_id": self.scope_id,
            "flag_key": self.flag_key,
            "value": self.value,
            "expires_at": _format_datetime(self.expires_at),
            "reason": self.reason,
            "created_by": self.created_by,
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Override":
        override = cls(
            scope=OverrideScope(data["scope"]),
            scope_id=data["scope_id"],
            flag_key=data["flag_key"],
            value=data.get("value"),
            expires_at=_parse_datetime(data.get("expires_at")),
            reason=data.get("reason"),
            created_by=data.get("created_by"),
        )
        if data.get("created_at"):
            override.created_at = _parse_datetime(data["created_at"])
        return override


@dataclass
class FlagSnapshot:
    """What the cache holds for one key: definition plus its overrides.

    ``definition`` is None for keys the store does not know, so unknown
    keys are cached like any other.
    """

    flag_key: str
    definition: Optional[FlagDefinition] = None
    overrides: List[Override] = field(default_factory=list)
    _index: Dict[Tuple[OverrideScope, str], Override] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        self._index = {override.target: override for override in self.overrides}

    @property
    def exists(self) -> bool:
        return self.definition is not None

    def find_override(
        self,
        scope: OverrideScope,
        scope_id: Optional[str],
        at: datetime,
    ) -> Optional[Override]:
        """Active override for ``(scope, scope_id)`` at ``at``, if any."""
        if not scope_id:
            return None
        override = self._index.get((scope, scope_id))
        if override is None or not override.is_active(at):
            return None
        return override

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag_key": self.flag_key,
            "definition": self.definition.to_dict() if self.definition else None,
            "overrides": [o.to_dict() for o in self.overrides],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlagSnapshot":
        definition = data.get("definition")
        return cls(
            flag_key=data["flag_key"],
            definition=FlagDefinition.from_dict(definition) if definition else None,
            overrides=[Override.from_dict(o) for o in data.get("overrides", [])],
        )


@dataclass
class EvaluationContext:
    """Who is asking, and when."""

    tenant_id: str
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def visitor_key(self) -> str:
        return self.user_id or self.tenant_id


@dataclass
class EvaluationResult:
    flag_key: str
    value: Any
    reason: EvaluationReason
    variant: Optional[str] = None
    bucket: Optional[int] = None

    @property
    def enabled(self) -> bool:
        return bool(self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag_key": self.flag_key,
            "value": self.value,
            "reason": self.reason.value,
            "variant": self.variant,
            "bucket": self.bucket,
        }


def index_by_key(definitions: Iterable[FlagDefinition]) -> Dict[str, FlagDefinition]:
    return {definition.key: definition for definition in definitions}
