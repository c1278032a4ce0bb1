"""Flag Store.

The durable source of truth for flag definitions, overrides and audit
entries lives outside this package; FlagStore is the interface the engine
needs from it. InMemoryFlagStore backs tests and single-process setups.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from flagengine.core.audit.entry import AuditAction, AuditEntry
from flagengine.core.errors import ConflictError
from flagengine.core.flags.definition import (
    FlagDefinition,
    FlagSnapshot,
    FlagType,
    Override,
    OverrideScope,
    utcnow,
)

logger = logging.getLogger(__name__)


class FlagStore(ABC):
    """Abstract interface to the durable flag store.

    Implementations raise StoreUnavailableError (or a ConnectionError /
    OSError) when the backing service cannot be reached.
    """

    @abstractmethod
    async def get_flag(self, key: str) -> Optional[FlagDefinition]:
        pass

    @abstractmethod
    async def list_flags(
        self,
        category: Optional[str] = None,
        flag_type: Optional[FlagType] = None,
        include_archived: bool = False,
        search: Optional[str] = None,
    ) -> List[FlagDefinition]:
        pass

    @abstractmethod
    async def save_flag(
        self,
        definition: FlagDefinition,
        expected_version: Optional[int],
    ) -> FlagDefinition:
        """Compare-and-set write.

        ``expected_version=None`` creates a new flag and fails if the key
        exists. Otherwise the stored version must equal ``expected_version``.
        Returns the stored definition with its new version.

        Raises:
            ConflictError: on a version mismatch.
        """
        pass

    @abstractmethod
    async def delete_flag(self, key: str) -> bool:
        """Hard-delete a flag and its overrides."""
        pass

    @abstractmethod
    async def get_override(
        self, scope: OverrideScope, scope_id: str, key: str
    ) -> Optional[Override]:
        pass

    @abstractmethod
    async def list_overrides(self, key: str) -> List[Override]:
        pass

    @abstractmethod
    async def save_override(self, override: Override) -> Override:
        """Store an override, replacing any for the same scope and id."""
        pass

    @abstractmethod
    async def delete_override(
        self, scope: OverrideScope, scope_id: str, key: str
    ) -> Optional[Override]:
        """Remove an override; returns what was removed."""
        pass

    @abstractmethod
    async def record_audit(self, entry: AuditEntry) -> None:
        """Append an audit entry; must be durable before returning."""
        pass

    @abstractmethod
    async def list_audit(
        self,
        flag_key: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEntry]:
        """Audit entries, newest first."""
        pass

    async def get_snapshot(self, key: str) -> FlagSnapshot:
        """Definition plus overrides for one key.

        Stores that can answer in a single round trip should override this.
        """
        definition = await self.get_flag(key)
        if definition is None:
            return FlagSnapshot(flag_key=key)
        overrides = await self.list_overrides(key)
        return FlagSnapshot(flag_key=key, definition=definition, overrides=overrides)

    async def list_categories(self) -> List[str]:
        flags = await self.list_flags(include_archived=True)
        return sorted({f.category for f in flags if f.category})


class InMemoryFlagStore(FlagStore):
    """In-memory flag store.

    Every read and write copies, so callers never share state with the
    store.
    """

    def __init__(self):
        self._flags: Dict[str, FlagDefinition] = {}
        self._overrides: Dict[str, Dict[Tuple[OverrideScope, str], Override]] = {}
        self._audit: List[AuditEntry] = []
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def get_flag(self, key: str) -> Optional[FlagDefinition]:
        async with self._get_lock():
            flag = self._flags.get(key)
            return copy.deepcopy(flag) if flag else None

    async def list_flags(
        self,
        category: Optional[str] = None,
        flag_type: Optional[FlagType] = None,
        include_archived: bool = False,
        search: Optional[str] = None,
    ) -> List[FlagDefinition]:
        needle = search.lower() if search else None
        async with self._get_lock():
            flags = []
            for flag in self._flags.values():
                if flag.archived and not include_archived:
                    continue
                if category is not None and flag.category != category:
                    continue
                if flag_type is not None and flag.flag_type != flag_type:
                    continue
                if needle and needle not in flag.key.lower() and needle not in flag.name.lower():
                    continue
                flags.append(copy.deepcopy(flag))
        flags.sort(key=lambda f: (f.category or "", f.key))
        return flags

    async def save_flag(
        self,
        definition: FlagDefinition,
        expected_version: Optional[int],
    ) -> FlagDefinition:
        async with self._get_lock():
            current = self._flags.get(definition.key)
            actual_version = current.version if current else None

            if expected_version is None:
                if current is not None:
                    raise ConflictError(definition.key, None, actual_version)
            elif current is None or current.version != expected_version:
                raise ConflictError(definition.key, expected_version, actual_version)

            stored = copy.deepcopy(definition)
            stored.version = (current.version if current else 0) + 1
            stored.updated_at = utcnow()
            if current is not None:
                stored.created_at = current.created_at
            self._flags[stored.key] = stored
            return copy.deepcopy(stored)

    async def delete_flag(self, key: str) -> bool:
        async with self._get_lock():
            if key not in self._flags:
                return False
            del self._flags[key]
            self._overrides.pop(key, None)
            return True

    async def get_override(
        self, scope: OverrideScope, scope_id: str, key: str
    ) -> Optional[Override]:
        async with self._get_lock():
            override = self._overrides.get(key, {}).get((scope, scope_id))
            return copy.deepcopy(override) if override else None

    async def list_overrides(self, key: str) -> List[Override]:
        async with self._get_lock():
            return [copy.deepcopy(o) for o in self._overrides.get(key, {}).values()]

    async def save_override(self, override: Override) -> Override:
        async with self._get_lock():
            stored = copy.deepcopy(override)
            self._overrides.setdefault(override.flag_key, {})[stored.target] = stored
            return copy.deepcopy(stored)

    async def delete_override(
        self, scope: OverrideScope, scope_id: str, key: str
    ) -> Optional[Override]:
        async with self._get_lock():
            return self._overrides.get(key, {}).pop((scope, scope_id), None)

    async def get_snapshot(self, key: str) -> FlagSnapshot:
        async with self._get_lock():
            flag = self._flags.get(key)
            if flag is None:
                return FlagSnapshot(flag_key=key)
            return FlagSnapshot(
                flag_key=key,
                definition=copy.deepcopy(flag),
                overrides=[copy.deepcopy(o) for o in self._overrides.get(key, {}).values()],
            )

    async def record_audit(self, entry: AuditEntry) -> None:
        async with self._get_lock():
            self._audit.append(entry.copy())

    async def list_audit(
        self,
        flag_key: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEntry]:
        async with self._get_lock():
            matching = [
                entry for entry in reversed(self._audit)
                if (flag_key is None or entry.flag_key == flag_key)
                and (action is None or entry.action == action)
            ]
            return [entry.copy() for entry in matching[offset:offset + limit]]
