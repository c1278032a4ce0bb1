"""Append-only audit records for flag mutations."""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditAction(Enum):
    """What kind of mutation an entry records."""
    CREATED = "created"
    UPDATED = "updated"
    ARCHIVED = "archived"
    DELETED = "deleted"
    KILL_SWITCH = "kill_switch"
    OVERRIDE_ADDED = "override_added"
    OVERRIDE_REMOVED = "override_removed"


class AuditReason(Enum):
    NORMAL = "normal"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one mutation.

    Created once per mutation; nothing in the public API updates or
    deletes an entry.
    """

    flag_key: str
    action: AuditAction
    actor: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    reason_tag: AuditReason = AuditReason.NORMAL
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def copy(self) -> "AuditEntry":
        """Deep copy so callers cannot reach into stored state snapshots."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "flag_key": self.flag_key,
            "action": self.action.value,
            "actor": self.actor,
            "before": copy.deepcopy(self.before),
            "after": copy.deepcopy(self.after),
            "reason_tag": self.reason_tag.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }
