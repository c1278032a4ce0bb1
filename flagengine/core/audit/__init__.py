"""Audit Module.

Append-only audit trail for flag mutations:
- Immutable entries with before/after state
- Normal vs emergency reason tags
- Synchronous, durable recording
"""

from flagengine.core.audit.entry import (
    AuditAction,
    AuditEntry,
    AuditReason,
)
from flagengine.core.audit.recorder import AuditRecorder

__all__ = [
    "AuditAction",
    "AuditEntry",
    "AuditReason",
    "AuditRecorder",
]
