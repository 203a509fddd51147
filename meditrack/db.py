"""
Storage abstraction for Postgres and an in-memory implementation.

Both backends expose the same coroutine API (``Storage``). The hybrid store in
``meditrack.hybrid`` sits in front of them and decides which one serves a call.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Protocol, TypeVar, Union

from sqlalchemy import Column, Float, ForeignKey, Integer, String, Text, event, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from meditrack.config import async_database_url
from meditrack.errors import ConflictError, NotFoundError, TransientStoreError, ValidationError
from meditrack.types import Role

logger = logging.getLogger(__name__)

T = TypeVar("T")

HEALTH_CHECK_USERNAME = "health_check_test"


@dataclass
class UserRecord:
    id: str
    username: str
    password: Optional[str] = None
    role: Optional[Role] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def __post_init__(self):
        if self.role is not None and not isinstance(self.role, Role):
            self.role = Role(self.role)

    def as_dict(self) -> dict:
        """Public view of the user; never includes the password hash."""
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role.value if self.role else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class PatientRecord:
    id: str
    user_id: str
    name: str
    contact_no: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    date_of_birth: Optional[str] = None
    occupation: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())


@dataclass
class DoctorRecord:
    id: str
    user_id: str
    name: str
    contact_no: Optional[str] = None
    employee_id: Optional[str] = None
    gender: Optional[str] = None
    age: Optional[int] = None
    experience: Optional[int] = None
    qualifications: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())


@dataclass
class FamilyMemberRecord:
    id: str
    user_id: str
    name: str
    contact_no: Optional[str] = None
    relation_with_patient: Optional[str] = None
    patient_name: Optional[str] = None
    patient_id: Optional[str] = None
    gender: Optional[str] = None
    age: Optional[int] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())


ProfileRecord = Union[PatientRecord, DoctorRecord, FamilyMemberRecord]
Record = Union[UserRecord, PatientRecord, DoctorRecord, FamilyMemberRecord]

PROFILE_TYPES: Dict[Role, type] = {
    Role.PATIENT: PatientRecord,
    Role.DOCTOR: DoctorRecord,
    Role.FAMILY: FamilyMemberRecord,
}

# Columns a caller may set on a profile; ids and timestamps are managed here.
_MANAGED_FIELDS = {"id", "user_id", "created_at", "updated_at"}


def profile_fields(record_type: type) -> set[str]:
    return {f.name for f in dataclasses.fields(record_type)} - _MANAGED_FIELDS


def _check_profile_details(record_type: type, details: dict) -> None:
    unknown = set(details) - profile_fields(record_type)
    if unknown:
        raise ValidationError(
            f"Unknown {record_type.__name__} fields: {', '.join(sorted(unknown))}"
        )


class Storage(Protocol):
    """Interface for user and profile persistence."""

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        ...

    async def create_user(
        self, username: str, password: Optional[str] = None
    ) -> UserRecord:
        ...

    async def update_user_role(self, user_id: str, role: Role) -> UserRecord:
        ...

    async def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        ...

    async def get_patient_by_user_id(self, user_id: str) -> Optional[PatientRecord]:
        ...

    async def create_patient(self, user_id: str, details: dict) -> PatientRecord:
        ...

    async def update_patient(self, user_id: str, details: dict) -> PatientRecord:
        ...

    async def get_doctor_by_user_id(self, user_id: str) -> Optional[DoctorRecord]:
        ...

    async def create_doctor(self, user_id: str, details: dict) -> DoctorRecord:
        ...

    async def update_doctor(self, user_id: str, details: dict) -> DoctorRecord:
        ...

    async def get_family_member_by_user_id(
        self, user_id: str
    ) -> Optional[FamilyMemberRecord]:
        ...

    async def create_family_member(
        self, user_id: str, details: dict
    ) -> FamilyMemberRecord:
        ...

    async def update_family_member(
        self, user_id: str, details: dict
    ) -> FamilyMemberRecord:
        ...

    async def get_user_with_role_data(
        self, user_id: str
    ) -> Optional[tuple[UserRecord, Optional[ProfileRecord]]]:
        ...

    async def restore(self, record: Record) -> None:
        ...


class RoleDataMixin:
    """Shared lookup of a user together with the profile for its current role."""

    async def get_user_with_role_data(
        self, user_id: str
    ) -> Optional[tuple[UserRecord, Optional[ProfileRecord]]]:
        user = await self.get_user(user_id)
        if not user:
            return None

        role_data: Optional[ProfileRecord] = None
        if user.role == Role.PATIENT:
            role_data = await self.get_patient_by_user_id(user_id)
        elif user.role == Role.DOCTOR:
            role_data = await self.get_doctor_by_user_id(user_id)
        elif user.role == Role.FAMILY:
            role_data = await self.get_family_member_by_user_id(user_id)
        return user, role_data


class InMemoryStorage(RoleDataMixin):
    """In-process store used as the database fallback and in tests."""

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.patients: Dict[str, PatientRecord] = {}
        self.doctors: Dict[str, DoctorRecord] = {}
        self.family_members: Dict[str, FamilyMemberRecord] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.users.clear()
        self.patients.clear()
        self.doctors.clear()
        self.family_members.clear()

    def _table_for(self, record: Record) -> Dict[str, Record]:
        if isinstance(record, UserRecord):
            return self.users
        if isinstance(record, PatientRecord):
            return self.patients
        if isinstance(record, DoctorRecord):
            return self.doctors
        if isinstance(record, FamilyMemberRecord):
            return self.family_members
        raise TypeError(f"Unsupported record type: {type(record).__name__}")

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self.users.get(user_id)

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.username == username:
                return user
        return None

    async def create_user(
        self, username: str, password: Optional[str] = None
    ) -> UserRecord:
        if await self.get_user_by_username(username):
            raise ConflictError("Username already exists")
        record = UserRecord(id=uuid.uuid4().hex, username=username, password=password or None)
        self.users[record.id] = record
        return record

    async def update_user_role(self, user_id: str, role: Role) -> UserRecord:
        user = self.users.get(user_id)
        if not user:
            raise NotFoundError("User not found")
        updated = dataclasses.replace(user, role=Role(role), updated_at=time.time())
        self.users[user_id] = updated
        return updated

    def _find_profile(self, table: Dict[str, T], user_id: str) -> Optional[T]:
        for profile in table.values():
            if profile.user_id == user_id:
                return profile
        return None

    def _check_patient_reference(self, details: dict) -> None:
        # Same rule as the family_members.patient_id foreign key.
        patient_id = details.get("patient_id")
        if patient_id is not None and patient_id not in self.patients:
            raise ConflictError("Record conflicts with existing data")

    def _create_profile(self, table: dict, record_type: type, user_id: str, details: dict):
        _check_profile_details(record_type, details)
        self._check_patient_reference(details)
        if self._find_profile(table, user_id):
            raise ConflictError(f"{record_type.__name__} already exists for user")
        record = record_type(id=uuid.uuid4().hex, user_id=user_id, **details)
        table[record.id] = record
        return record

    def _update_profile(self, table: dict, record_type: type, user_id: str, details: dict):
        _check_profile_details(record_type, details)
        self._check_patient_reference(details)
        profile = self._find_profile(table, user_id)
        if not profile:
            raise NotFoundError(f"{record_type.__name__} not found")
        updated = dataclasses.replace(profile, **details, updated_at=time.time())
        table[profile.id] = updated
        return updated

    async def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        return self.patients.get(patient_id)

    async def get_patient_by_user_id(self, user_id: str) -> Optional[PatientRecord]:
        return self._find_profile(self.patients, user_id)

    async def create_patient(self, user_id: str, details: dict) -> PatientRecord:
        return self._create_profile(self.patients, PatientRecord, user_id, details)

    async def update_patient(self, user_id: str, details: dict) -> PatientRecord:
        return self._update_profile(self.patients, PatientRecord, user_id, details)

    async def get_doctor_by_user_id(self, user_id: str) -> Optional[DoctorRecord]:
        return self._find_profile(self.doctors, user_id)

    async def create_doctor(self, user_id: str, details: dict) -> DoctorRecord:
        return self._create_profile(self.doctors, DoctorRecord, user_id, details)

    async def update_doctor(self, user_id: str, details: dict) -> DoctorRecord:
        return self._update_profile(self.doctors, DoctorRecord, user_id, details)

    async def get_family_member_by_user_id(
        self, user_id: str
    ) -> Optional[FamilyMemberRecord]:
        return self._find_profile(self.family_members, user_id)

    async def create_family_member(
        self, user_id: str, details: dict
    ) -> FamilyMemberRecord:
        return self._create_profile(
            self.family_members, FamilyMemberRecord, user_id, details
        )

    async def update_family_member(
        self, user_id: str, details: dict
    ) -> FamilyMemberRecord:
        return self._update_profile(
            self.family_members, FamilyMemberRecord, user_id, details
        )

    async def restore(self, record: Record) -> None:
        """Store a complete record under its own id, replacing any previous copy."""
        if isinstance(record, UserRecord):
            existing = await self.get_user_by_username(record.username)
            if existing and existing.id != record.id:
                raise ConflictError("Username already exists")
        self._table_for(record)[record.id] = record


class SqlStorage(RoleDataMixin):
    """
    SQLAlchemy-backed implementation. Accepts any async SQLAlchemy URL (e.g.,
    Postgres via asyncpg or SQLite via aiosqlite for tests).

    Every query runs under a fixed timeout. A timeout or a driver error is
    reported as ``TransientStoreError``; a timeout also triggers a reconnect
    probe. While disconnected, reads return None and writes raise.
    """

    def __init__(self, database_url: str, timeout_seconds: float = 5.0):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlStorage")
        self.timeout_seconds = timeout_seconds
        self.connected = False
        self.engine = create_async_engine(
            async_database_url(database_url),
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def connect(self) -> bool:
        """Create tables if needed and check the connection with ``SELECT 1``."""

        async def _create_schema():
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
                await conn.execute(text("SELECT 1"))

        try:
            await asyncio.wait_for(_create_schema(), timeout=self.timeout_seconds)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Database connection test failed: %s", exc)
            self.connected = False
        else:
            logger.info("Database connection test successful")
            self.connected = True
        return self.connected

    async def ping(self) -> bool:
        """Run a harmless read; updates and returns ``connected``."""

        async def _probe():
            async with self.Session() as session:
                await session.execute(text("SELECT 1"))
                await session.execute(
                    select(UserRow.id).where(UserRow.username == HEALTH_CHECK_USERNAME)
                )

        try:
            await asyncio.wait_for(_probe(), timeout=self.timeout_seconds)
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Database ping failed: %s", exc)
            self.connected = False
        else:
            self.connected = True
        return self.connected

    async def dispose(self) -> None:
        self.connected = False
        await self.engine.dispose()

    async def _run(
        self, operation: str, query: Callable[[], Awaitable[T]], *, write: bool = False
    ) -> Optional[T]:
        if not self.connected:
            if write:
                raise TransientStoreError("Database not available")
            logger.warning("Database not available, returning None for %s", operation)
            return None
        try:
            return await asyncio.wait_for(query(), timeout=self.timeout_seconds)
        except TimeoutError as exc:
            logger.error("Query timeout in %s, attempting to reconnect", operation)
            await self.ping()
            raise TransientStoreError(f"Query timeout in {operation}") from exc
        except IntegrityError as exc:
            logger.warning("Constraint violated in %s: %s", operation, exc.orig)
            raise ConflictError("Record conflicts with existing data") from exc
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Error in %s: %s", operation, exc)
            raise TransientStoreError(f"Database error in {operation}") from exc

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        async def query():
            async with self.Session() as session:
                row = await session.get(UserRow, user_id)
                return _to_record(UserRecord, row)

        return await self._run("get_user", query)

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        async def query():
            async with self.Session() as session:
                stmt = select(UserRow).where(UserRow.username == username)
                row = (await session.execute(stmt)).scalar_one_or_none()
                return _to_record(UserRecord, row)

        return await self._run("get_user_by_username", query)

    async def create_user(
        self, username: str, password: Optional[str] = None
    ) -> UserRecord:
        async def query():
            now = time.time()
            async with self.Session() as session:
                stmt = select(UserRow.id).where(UserRow.username == username)
                if (await session.execute(stmt)).first():
                    raise ConflictError("Username already exists")
                row = UserRow(
                    id=uuid.uuid4().hex,
                    username=username,
                    password=password or None,
                    role=None,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                await session.commit()
                return _to_record(UserRecord, row)

        return await self._run("create_user", query, write=True)

    async def update_user_role(self, user_id: str, role: Role) -> UserRecord:
        async def query():
            async with self.Session() as session:
                row = await session.get(UserRow, user_id)
                if not row:
                    raise NotFoundError("User not found")
                row.role = Role(role).value
                row.updated_at = time.time()
                await session.commit()
                return _to_record(UserRecord, row)

        return await self._run("update_user_role", query, write=True)

    async def _get_profile(self, row_type, record_type: type, user_id: str):
        async def query():
            async with self.Session() as session:
                stmt = select(row_type).where(row_type.user_id == user_id)
                row = (await session.execute(stmt)).scalar_one_or_none()
                return _to_record(record_type, row)

        return await self._run(f"get_{row_type.__tablename__}", query)

    async def _create_profile(self, row_type, record_type: type, user_id: str, details: dict):
        _check_profile_details(record_type, details)

        async def query():
            now = time.time()
            async with self.Session() as session:
                row = row_type(
                    id=uuid.uuid4().hex,
                    user_id=user_id,
                    created_at=now,
                    updated_at=now,
                    **details,
                )
                session.add(row)
                await session.commit()
                return _to_record(record_type, row)

        return await self._run(f"create_{row_type.__tablename__}", query, write=True)

    async def _update_profile(self, row_type, record_type: type, user_id: str, details: dict):
        _check_profile_details(record_type, details)

        async def query():
            async with self.Session() as session:
                stmt = select(row_type).where(row_type.user_id == user_id)
                row = (await session.execute(stmt)).scalar_one_or_none()
                if not row:
                    raise NotFoundError(f"{record_type.__name__} not found")
                for key, value in details.items():
                    setattr(row, key, value)
                row.updated_at = time.time()
                await session.commit()
                return _to_record(record_type, row)

        return await self._run(f"update_{row_type.__tablename__}", query, write=True)

    async def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        async def query():
            async with self.Session() as session:
                row = await session.get(PatientRow, patient_id)
                return _to_record(PatientRecord, row)

        return await self._run("get_patient", query)

    async def get_patient_by_user_id(self, user_id: str) -> Optional[PatientRecord]:
        return await self._get_profile(PatientRow, PatientRecord, user_id)

    async def create_patient(self, user_id: str, details: dict) -> PatientRecord:
        return await self._create_profile(PatientRow, PatientRecord, user_id, details)

    async def update_patient(self, user_id: str, details: dict) -> PatientRecord:
        return await self._update_profile(PatientRow, PatientRecord, user_id, details)

    async def get_doctor_by_user_id(self, user_id: str) -> Optional[DoctorRecord]:
        return await self._get_profile(DoctorRow, DoctorRecord, user_id)

    async def create_doctor(self, user_id: str, details: dict) -> DoctorRecord:
        return await self._create_profile(DoctorRow, DoctorRecord, user_id, details)

    async def update_doctor(self, user_id: str, details: dict) -> DoctorRecord:
        return await self._update_profile(DoctorRow, DoctorRecord, user_id, details)

    async def get_family_member_by_user_id(
        self, user_id: str
    ) -> Optional[FamilyMemberRecord]:
        return await self._get_profile(FamilyMemberRow, FamilyMemberRecord, user_id)

    async def create_family_member(
        self, user_id: str, details: dict
    ) -> FamilyMemberRecord:
        return await self._create_profile(
            FamilyMemberRow, FamilyMemberRecord, user_id, details
        )

    async def update_family_member(
        self, user_id: str, details: dict
    ) -> FamilyMemberRecord:
        return await self._update_profile(
            FamilyMemberRow, FamilyMemberRecord, user_id, details
        )

    async def restore(self, record: Record) -> None:
        """Upsert a complete record by primary key."""
        row_type = ROW_TYPES[type(record)]
        values = dataclasses.asdict(record)
        if isinstance(record, UserRecord) and record.role is not None:
            values["role"] = record.role.value

        async def query():
            async with self.Session() as session:
                await session.merge(row_type(**values))
                await session.commit()

        await self._run(f"restore_{row_type.__tablename__}", query, write=True)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ignores REFERENCES clauses unless this is set per connection.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _to_record(record_type: type, row) -> Optional[Record]:
    if row is None:
        return None
    return record_type(
        **{f.name: getattr(row, f.name) for f in dataclasses.fields(record_type)}
    )


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    username = Column(String, nullable=False, unique=True, index=True)
    # Null for identity-provider accounts.
    password = Column(String, nullable=True)
    role = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class PatientRow(Base):
    __tablename__ = "patients"

    id = Column(String, primary_key=True)
    user_id = Column(
        String,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    name = Column(String, nullable=False)
    contact_no = Column(String, nullable=True)
    age = Column(Integer, nullable=True)
    gender = Column(String, nullable=True)
    date_of_birth = Column(String, nullable=True)
    occupation = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class DoctorRow(Base):
    __tablename__ = "doctors"

    id = Column(String, primary_key=True)
    user_id = Column(
        String,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    name = Column(String, nullable=False)
    contact_no = Column(String, nullable=True)
    employee_id = Column(String, nullable=True)
    gender = Column(String, nullable=True)
    age = Column(Integer, nullable=True)
    experience = Column(Integer, nullable=True)
    qualifications = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class FamilyMemberRow(Base):
    __tablename__ = "family_members"

    id = Column(String, primary_key=True)
    user_id = Column(
        String,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    patient_id = Column(
        String, ForeignKey("patients.id", ondelete="SET NULL"), nullable=True
    )
    name = Column(String, nullable=False)
    contact_no = Column(String, nullable=True)
    relation_with_patient = Column(String, nullable=True)
    patient_name = Column(String, nullable=True)
    gender = Column(String, nullable=True)
    age = Column(Integer, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


ROW_TYPES = {
    UserRecord: UserRow,
    PatientRecord: PatientRow,
    DoctorRecord: DoctorRow,
    FamilyMemberRecord: FamilyMemberRow,
}
