"""
Pydantic schemas for the MediTrack HTTP API.

Field names are camelCase on the wire (``contactNo``, ``dateOfBirth``) and
snake_case in Python; both spellings are accepted on input.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from meditrack.types import Gender, Role, StorageMode


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Credentials(ApiModel):
    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)


class UserSummary(ApiModel):
    id: str
    username: str


class AuthResponse(ApiModel):
    message: str
    user: UserSummary


class MessageResponse(ApiModel):
    message: str


class CurrentUserResponse(ApiModel):
    user_id: str


class RoleRequest(ApiModel):
    role: Role


class RoleResponse(ApiModel):
    role: Optional[Role] = None


class SetRoleResponse(ApiModel):
    message: str
    role: Role


class PatientDetails(ApiModel):
    name: str = Field(..., min_length=1, max_length=200)
    contact_no: Optional[str] = Field(default=None, max_length=32)
    age: Optional[int] = Field(default=None, ge=0, le=150)
    gender: Optional[Gender] = None
    date_of_birth: Optional[str] = Field(default=None, max_length=32)
    occupation: Optional[str] = Field(default=None, max_length=200)


class DoctorDetails(ApiModel):
    name: str = Field(..., min_length=1, max_length=200)
    contact_no: Optional[str] = Field(default=None, max_length=32)
    employee_id: Optional[str] = Field(default=None, max_length=64)
    gender: Optional[Gender] = None
    age: Optional[int] = Field(default=None, ge=0, le=150)
    experience: Optional[int] = Field(default=None, ge=0, le=80)
    qualifications: Optional[str] = Field(default=None, max_length=2000)


class FamilyDetails(ApiModel):
    name: str = Field(..., min_length=1, max_length=200)
    contact_no: Optional[str] = Field(default=None, max_length=32)
    relation_with_patient: Optional[str] = Field(default=None, max_length=100)
    patient_name: Optional[str] = Field(default=None, max_length=200)
    patient_id: Optional[str] = Field(default=None, max_length=64)
    gender: Optional[Gender] = None
    age: Optional[int] = Field(default=None, ge=0, le=150)


DETAILS_MODELS: dict[Role, type[ApiModel]] = {
    Role.PATIENT: PatientDetails,
    Role.DOCTOR: DoctorDetails,
    Role.FAMILY: FamilyDetails,
}


class _StoredProfile(ApiModel):
    id: str
    user_id: str
    created_at: float
    updated_at: float


class PatientProfile(PatientDetails, _StoredProfile):
    role: Literal["patient"] = "patient"


class DoctorProfile(DoctorDetails, _StoredProfile):
    role: Literal["doctor"] = "doctor"


class FamilyProfile(FamilyDetails, _StoredProfile):
    role: Literal["family"] = "family"


Profile = Annotated[
    Union[PatientProfile, DoctorProfile, FamilyProfile], Field(discriminator="role")
]

PROFILE_MODELS: dict[Role, type[ApiModel]] = {
    Role.PATIENT: PatientProfile,
    Role.DOCTOR: DoctorProfile,
    Role.FAMILY: FamilyProfile,
}


class SetDetailsResponse(ApiModel):
    message: str
    details: Profile


class ProfileStatusResponse(ApiModel):
    has_role: bool
    role: Optional[Role] = None
    has_details: bool
    redirect_path: str


class StorageStatusView(ApiModel):
    mode: StorageMode
    database_configured: bool
    demotions: int
    promotions: int
    mirror_failures: int
    pending_replay: int
    replayed: int


class HealthResponse(ApiModel):
    status: Literal["ok"]
    storage: StorageStatusView
