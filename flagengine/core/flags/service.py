"""Flag mutations.

Every mutation writes the store, records one audit entry, then
invalidates the flag across instances. Audit writes are synchronous: a
mutation does not return success until its entry is stored.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from flagengine.core.audit import AuditAction, AuditEntry, AuditReason, AuditRecorder
from flagengine.core.errors import ConfigurationError, FlagNotFoundError
from flagengine.core.flags.cache import FlagCache
from flagengine.core.flags.definition import (
    FlagDefinition,
    Override,
    OverrideScope,
    index_by_key,
)
from flagengine.core.flags.store import FlagStore
from flagengine.core.logging.structured import get_logger, log_context, timed_operation
from flagengine.utils.metrics import flag_mutations_total

logger = logging.getLogger(__name__)

SEED_UPDATE_REASON = "Automatic seed update"


class FlagService:
    """Write path for flags, overrides and the kill switch.

    ConflictError from a compare-and-set write is passed to the caller,
    who re-reads and retries; nothing here retries.
    """

    def __init__(
        self,
        store: FlagStore,
        cache: FlagCache,
        recorder: Optional[AuditRecorder] = None,
    ):
        self._store = store
        self._cache = cache
        self._recorder = recorder or AuditRecorder(store)
        self._log = get_logger(__name__)

    async def create_flag(self, definition: FlagDefinition, actor: str) -> FlagDefinition:
        """Create a new flag.

        Raises:
            ConfigurationError: if the definition is invalid.
            ConflictError: if a flag with this key already exists.
        """
        definition.validate()
        if definition.created_by is None:
            definition.created_by = actor
        stored = await self._store.save_flag(definition, expected_version=None)
        await self._commit(stored.key, AuditAction.CREATED, actor, after=stored.to_dict())
        return stored

    async def update_flag(
        self,
        definition: FlagDefinition,
        actor: str,
        reason: Optional[str] = None,
    ) -> FlagDefinition:
        """Replace a flag, compare-and-set against ``definition.version``."""
        definition.validate()
        current = await self._store.get_flag(definition.key)
        if current is None:
            raise FlagNotFoundError(definition.key)

        stored = await self._store.save_flag(definition, expected_version=definition.version)
        action = AuditAction.UPDATED
        if stored.archived and not current.archived:
            action = AuditAction.ARCHIVED
        await self._commit(
            stored.key,
            action,
            actor,
            before=current.to_dict(),
            after=stored.to_dict(),
            reason=reason,
        )
        return stored

    async def archive_flag(
        self,
        flag_key: str,
        actor: str,
        reason: Optional[str] = None,
    ) -> FlagDefinition:
        current = await self._store.get_flag(flag_key)
        if current is None:
            raise FlagNotFoundError(flag_key)
        if current.archived:
            return current
        current.archived = True
        return await self.update_flag(current, actor, reason=reason)

    async def delete_flag(
        self,
        flag_key: str,
        actor: str,
        reason: Optional[str] = None,
    ) -> bool:
        """Hard-delete a flag and its overrides. False if it did not exist."""
        current = await self._store.get_flag(flag_key)
        if current is None:
            return False
        if not await self._store.delete_flag(flag_key):
            return False
        await self._commit(
            flag_key, AuditAction.DELETED, actor, before=current.to_dict(), reason=reason
        )
        return True

    async def set_override(self, override: Override, actor: str) -> Override:
        """Force a value for one user or tenant, replacing any existing override."""
        if await self._store.get_flag(override.flag_key) is None:
            raise FlagNotFoundError(override.flag_key)

        previous = await self._store.get_override(
            override.scope, override.scope_id, override.flag_key
        )
        if override.created_by is None:
            override.created_by = actor
        stored = await self._store.save_override(override)
        await self._commit(
            stored.flag_key,
            AuditAction.OVERRIDE_ADDED,
            actor,
            before=previous.to_dict() if previous else None,
            after=stored.to_dict(),
            reason=stored.reason,
        )
        return stored

    async def remove_override(
        self,
        scope: OverrideScope,
        scope_id: str,
        flag_key: str,
        actor: str,
        reason: Optional[str] = None,
    ) -> bool:
        removed = await self._store.delete_override(scope, scope_id, flag_key)
        if removed is None:
            return False
        await self._commit(
            flag_key,
            AuditAction.OVERRIDE_REMOVED,
            actor,
            before=removed.to_dict(),
            reason=reason,
        )
        return True

    @timed_operation("kill_switch")
    async def emergency_disable(
        self,
        flag_key: str,
        actor: str,
        reason: str = "Emergency kill switch",
    ) -> FlagDefinition:
        """Kill switch: disable ``flag_key`` everywhere.

        Reads the authoritative definition from the store (never the
        cache), saves ``enabled=False`` against the version it read,
        records an emergency audit entry, then invalidates. Invalidation
        runs even when the audit write fails, so the disabled state
        spreads; the AuditWriteError is still raised.

        Raises:
            FlagNotFoundError: unknown flag.
            ConflictError: the flag changed between read and write.
            AuditWriteError: the flag is disabled but the entry was not stored.
        """
        current = await self._store.get_flag(flag_key)
        if current is None:
            raise FlagNotFoundError(flag_key)

        before = current.to_dict()
        current.enabled = False
        stored = await self._store.save_flag(current, expected_version=current.version)

        self._log.warning(
            "Kill switch engaged",
            flag_key=flag_key,
            actor=actor,
            reason=reason,
            version=stored.version,
        )
        await self._commit(
            flag_key,
            AuditAction.KILL_SWITCH,
            actor,
            before=before,
            after=stored.to_dict(),
            reason_tag=AuditReason.EMERGENCY,
            reason=reason,
        )
        return stored

    async def seed_flags(
        self,
        definitions: Iterable[FlagDefinition],
        actor: str,
    ) -> Tuple[int, int]:
        """Upsert flags. Returns ``(created, updated)``.

        Existing flags take the seed's targeting and descriptive fields;
        their enabled state, archive state and salt are left alone.
        """
        created = 0
        updated = 0
        for definition in index_by_key(definitions).values():
            existing = await self._store.get_flag(definition.key)
            if existing is None:
                await self.create_flag(definition, actor)
                created += 1
                continue

            merged = replace(
                existing,
                rule=definition.rule,
                default_value=definition.default_value,
                enabled_tenants=set(definition.enabled_tenants),
                disabled_tenants=set(definition.disabled_tenants),
                enabled_users=set(definition.enabled_users),
                name=definition.name,
                description=definition.description,
                category=definition.category,
                metadata=dict(definition.metadata),
            )
            await self.update_flag(merged, actor, reason=SEED_UPDATE_REASON)
            updated += 1

        logger.info(f"Seeded flags: {created} created, {updated} updated")
        return created, updated

    async def get_flag(self, flag_key: str) -> Optional[FlagDefinition]:
        """Authoritative read, bypassing the cache."""
        return await self._store.get_flag(flag_key)

    async def list_flags(self, **filters: Any) -> List[FlagDefinition]:
        return await self._store.list_flags(**filters)

    async def list_categories(self) -> List[str]:
        return await self._store.list_categories()

    async def get_audit_log(
        self,
        flag_key: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEntry]:
        return await self._recorder.history(
            flag_key=flag_key, action=action, limit=limit, offset=offset
        )

    async def _commit(
        self,
        flag_key: str,
        action: AuditAction,
        actor: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        reason_tag: AuditReason = AuditReason.NORMAL,
        reason: Optional[str] = None,
    ) -> AuditEntry:
        """Audit a store write that already happened, then invalidate."""
        with log_context(flag_key=flag_key, actor=actor):
            try:
                entry = await self._recorder.record(
                    flag_key,
                    action,
                    actor,
                    before=before,
                    after=after,
                    reason_tag=reason_tag,
                    reason=reason,
                )
            finally:
                # The store is already changed; stale caches must not outlive it
                await self._cache.invalidate(flag_key)

        flag_mutations_total.labels(action=action.value).inc()
        self._log.info(
            f"Flag {action.value}",
            flag_key=flag_key,
            actor=actor,
            reason_tag=reason_tag.value,
            audit_id=entry.id,
        )
        return entry


def load_flag_definitions(path: Union[str, Path]) -> List[FlagDefinition]:
    """Read flag definitions from a JSON seed file.

    The file holds either a list of definitions or ``{"flags": [...]}``.
    Every definition is validated.

    Raises:
        ConfigurationError: unreadable file or invalid definition.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read flag seed file {path}: {e}") from e

    if isinstance(data, dict):
        data = data.get("flags", [])
    if not isinstance(data, list):
        raise ConfigurationError(f"Flag seed file {path} must contain a list of flags")

    definitions = []
    for item in data:
        try:
            definition = FlagDefinition.from_dict(item)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid flag entry in {path}: {e}") from e
        definition.validate()
        definitions.append(definition)

    logger.info(f"Loaded {len(definitions)} flag definitions from {path}")
    return definitions
