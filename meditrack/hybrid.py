"""
Hybrid storage that falls back to memory when the database is unavailable.

The façade serves every call from the SQL adapter while it is healthy. The
first ``TransientStoreError`` demotes it to the in-memory store; a periodic
health probe promotes it back once the database answers again.

Consistency across a demotion is limited:

* successful database writes are mirrored into memory (``mirror_writes``), so
  records written before a demotion stay readable during the fallback;
* writes accepted by memory while demoted are queued and upserted into the
  database before promotion (``replay_on_promotion``).

With mirroring off, data written before the demotion is simply absent from
memory until the database comes back.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from meditrack.db import (
    DoctorRecord,
    FamilyMemberRecord,
    InMemoryStorage,
    PatientRecord,
    ProfileRecord,
    Record,
    SqlStorage,
    UserRecord,
)
from meditrack.errors import ConflictError, TransientStoreError
from meditrack.types import Role, StorageMode

logger = logging.getLogger(__name__)

# Replay order follows the foreign keys: users, then patients (referenced by
# family members), then the rest.
_REPLAY_ORDER = {UserRecord: 0, PatientRecord: 1, DoctorRecord: 2, FamilyMemberRecord: 3}


@dataclass
class StorageStatus:
    mode: StorageMode
    database_configured: bool
    demotions: int = 0
    promotions: int = 0
    mirror_failures: int = 0
    pending_replay: int = 0
    replayed: int = 0

    def as_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "database_configured": self.database_configured,
            "demotions": self.demotions,
            "promotions": self.promotions,
            "mirror_failures": self.mirror_failures,
            "pending_replay": self.pending_replay,
            "replayed": self.replayed,
        }


class HybridStorage:
    def __init__(
        self,
        database: Optional[SqlStorage],
        memory: Optional[InMemoryStorage] = None,
        *,
        use_database: bool = False,
        mirror_writes: bool = True,
        replay_on_promotion: bool = True,
    ):
        self.database = database
        self.memory = memory or InMemoryStorage()
        self.mirror_writes = mirror_writes
        self.replay_on_promotion = replay_on_promotion
        self._use_database = bool(database is not None and use_database)
        self._pending: Dict[tuple[type, str], Record] = {}
        self._demotions = 0
        self._promotions = 0
        self._mirror_failures = 0
        self._replayed = 0

    @property
    def mode(self) -> StorageMode:
        return StorageMode.DATABASE if self._use_database else StorageMode.MEMORY

    def status(self) -> StorageStatus:
        return StorageStatus(
            mode=self.mode,
            database_configured=self.database is not None,
            demotions=self._demotions,
            promotions=self._promotions,
            mirror_failures=self._mirror_failures,
            pending_replay=len(self._pending),
            replayed=self._replayed,
        )

    def _demote(self, operation: str, exc: Exception) -> None:
        if self._use_database:
            logger.warning(
                "Database operation %s failed (%s), falling back to memory storage",
                operation,
                exc,
            )
            self._demotions += 1
        self._use_database = False

    async def _execute(self, operation: str, *args, write: bool = False):
        if self._use_database:
            try:
                result = await getattr(self.database, operation)(*args)
            except TransientStoreError as exc:
                self._demote(operation, exc)
            else:
                if write and self.mirror_writes:
                    await self._mirror(operation, result)
                return result

        result = await getattr(self.memory, operation)(*args)
        if write and self.replay_on_promotion and self.database is not None:
            self._pending[(type(result), result.id)] = result
        return result

    async def _mirror(self, operation: str, record: Record) -> None:
        try:
            await self.memory.restore(record)
        except ConflictError as exc:
            self._mirror_failures += 1
            logger.warning("Mirroring %s into memory failed: %s", operation, exc)
        else:
            logger.debug("Mirrored %s %s into memory", operation, record.id)

    async def _replay_pending(self) -> bool:
        """Upsert queued fallback writes into the database. Returns True when drained."""
        ordered = sorted(self._pending.items(), key=lambda item: _REPLAY_ORDER[item[0][0]])
        for key, record in ordered:
            try:
                await self.database.restore(record)
            except ConflictError as exc:
                logger.error(
                    "Dropping %s %s from replay: %s", type(record).__name__, record.id, exc
                )
            except TransientStoreError as exc:
                logger.warning(
                    "Replay interrupted with %d writes pending: %s", len(self._pending), exc
                )
                return False
            else:
                self._replayed += 1
            del self._pending[key]
        return True

    async def check_database_health(self) -> bool:
        """
        Probe the database while in fallback mode and promote it back when it answers.
        Returns whether the database is in use after the check.
        """
        if self._use_database or self.database is None:
            return self._use_database

        if not await self.database.ping():
            return False
        if self._pending and not await self._replay_pending():
            return False

        logger.info("Database is back online, switching to database storage")
        self._promotions += 1
        self._use_database = True
        return True

    async def run_health_checks(self, interval_seconds: float = 30.0) -> None:
        """
        Probe loop started by the app lifespan. Runs until cancelled.
        """
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.check_database_health()
            except Exception:
                logger.exception("Database health check failed")

    # User operations

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        return await self._execute("get_user", user_id)

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        return await self._execute("get_user_by_username", username)

    async def create_user(
        self, username: str, password: Optional[str] = None
    ) -> UserRecord:
        return await self._execute("create_user", username, password, write=True)

    async def update_user_role(self, user_id: str, role: Role) -> UserRecord:
        return await self._execute("update_user_role", user_id, role, write=True)

    # Patient operations

    async def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        return await self._execute("get_patient", patient_id)

    async def get_patient_by_user_id(self, user_id: str) -> Optional[PatientRecord]:
        return await self._execute("get_patient_by_user_id", user_id)

    async def create_patient(self, user_id: str, details: dict) -> PatientRecord:
        return await self._execute("create_patient", user_id, details, write=True)

    async def update_patient(self, user_id: str, details: dict) -> PatientRecord:
        return await self._execute("update_patient", user_id, details, write=True)

    # Doctor operations

    async def get_doctor_by_user_id(self, user_id: str) -> Optional[DoctorRecord]:
        return await self._execute("get_doctor_by_user_id", user_id)

    async def create_doctor(self, user_id: str, details: dict) -> DoctorRecord:
        return await self._execute("create_doctor", user_id, details, write=True)

    async def update_doctor(self, user_id: str, details: dict) -> DoctorRecord:
        return await self._execute("update_doctor", user_id, details, write=True)

    # Family member operations

    async def get_family_member_by_user_id(
        self, user_id: str
    ) -> Optional[FamilyMemberRecord]:
        return await self._execute("get_family_member_by_user_id", user_id)

    async def create_family_member(
        self, user_id: str, details: dict
    ) -> FamilyMemberRecord:
        return await self._execute("create_family_member", user_id, details, write=True)

    async def update_family_member(
        self, user_id: str, details: dict
    ) -> FamilyMemberRecord:
        return await self._execute("update_family_member", user_id, details, write=True)

    async def get_user_with_role_data(
        self, user_id: str
    ) -> Optional[tuple[UserRecord, Optional[ProfileRecord]]]:
        return await self._execute("get_user_with_role_data", user_id)
