"""
Enumerations shared by the storage layer and the HTTP schemas.
"""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    FAMILY = "family"


class Gender(StrEnum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    PREFER_NOT_TO_SAY = "prefer-not-to-say"


class StorageMode(StrEnum):
    """Which backend the hybrid store is currently serving from."""

    DATABASE = "database"
    MEMORY = "memory"
