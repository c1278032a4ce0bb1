"""Synchronous audit recording for the mutation path."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from flagengine.core.audit.entry import AuditAction, AuditEntry, AuditReason, utcnow
from flagengine.core.errors import AuditWriteError

if TYPE_CHECKING:
    from flagengine.core.flags.store import FlagStore

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Append-only audit log backed by the flag store.

    ``record`` returns only after the store has durably accepted the entry.
    Entries cannot be changed or removed once recorded.
    """

    def __init__(
        self,
        store: "FlagStore",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._clock = clock

    async def record(
        self,
        flag_key: str,
        action: AuditAction,
        actor: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        reason_tag: AuditReason = AuditReason.NORMAL,
        reason: Optional[str] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            flag_key=flag_key,
            action=action,
            actor=actor,
            before=before,
            after=after,
            reason_tag=reason_tag,
            reason=reason,
            timestamp=self._clock(),
        )
        try:
            await self._store.record_audit(entry)
        except Exception as e:
            logger.error(f"Audit write failed for {flag_key} ({action.value}): {e}")
            raise AuditWriteError(
                f"Could not record {action.value} audit entry for '{flag_key}': {e}"
            ) from e
        return entry

    async def history(
        self,
        flag_key: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEntry]:
        """Read-only view of the log, newest first."""
        return await self._store.list_audit(
            flag_key=flag_key, action=action, limit=limit, offset=offset
        )
