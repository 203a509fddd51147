"""
HTTP routes for the MediTrack backend API.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Optional

import pydantic
from fastapi import APIRouter, Body, Depends, Response
from starlette.concurrency import run_in_threadpool

from meditrack.db import ProfileRecord
from meditrack.dependencies import (
    StoreContext,
    get_context,
    get_session_id,
    get_storage,
    require_user_id,
)
from meditrack.errors import AuthError, ConflictError, NotFoundError, ValidationError
from meditrack.hybrid import HybridStorage
from meditrack.passwords import hash_password, verify_password
from meditrack.schemas import (
    DETAILS_MODELS,
    PROFILE_MODELS,
    AuthResponse,
    Credentials,
    CurrentUserResponse,
    HealthResponse,
    MessageResponse,
    Profile,
    ProfileStatusResponse,
    RoleRequest,
    RoleResponse,
    SetDetailsResponse,
    SetRoleResponse,
    StorageStatusView,
    UserSummary,
)
from meditrack.types import Role

logger = logging.getLogger(__name__)

router = APIRouter()
health_router = APIRouter()

# Usernames of identity-provider accounts; password signups may not use it.
GOOGLE_USERNAME_PREFIX = "google:"


async def start_session(response: Response, context: StoreContext, user_id: str) -> None:
    settings = context.settings
    session_id = await context.sessions.create(user_id)
    response.set_cookie(
        settings.session_cookie_name,
        session_id,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


def _profile_operations(storage: HybridStorage, role: Role):
    """Return the (get, create, update) coroutines for the table that backs ``role``."""
    if role == Role.PATIENT:
        return storage.get_patient_by_user_id, storage.create_patient, storage.update_patient
    if role == Role.DOCTOR:
        return storage.get_doctor_by_user_id, storage.create_doctor, storage.update_doctor
    if role == Role.FAMILY:
        return (
            storage.get_family_member_by_user_id,
            storage.create_family_member,
            storage.update_family_member,
        )
    raise ValueError(f"Unhandled role: {role!r}")


def _profile_view(role: Role, profile: ProfileRecord):
    return PROFILE_MODELS[role].model_validate(dataclasses.asdict(profile))


def _redirect_path(role: Optional[Role], has_details: bool) -> str:
    if role is None:
        return "/role-selection"
    if not has_details:
        return f"/details/{role.value}"
    return f"/dashboard/{role.value}"


@router.post("/signup", response_model=AuthResponse, status_code=201)
async def signup(
    payload: Credentials,
    response: Response,
    context: StoreContext = Depends(get_context),
    storage: HybridStorage = Depends(get_storage),
):
    if payload.username.startswith(GOOGLE_USERNAME_PREFIX):
        raise ValidationError("username: this username is reserved")
    if await storage.get_user_by_username(payload.username):
        raise ConflictError("Username already exists")

    hashed = await run_in_threadpool(
        hash_password, payload.password, context.settings.bcrypt_rounds
    )
    user = await storage.create_user(payload.username, hashed)
    await start_session(response, context, user.id)
    logger.info("Created user %s", user.id)
    return AuthResponse(
        message="Signup successful",
        user=UserSummary(id=user.id, username=user.username),
    )


@router.post("/login", response_model=AuthResponse)
async def login(
    payload: Credentials,
    response: Response,
    context: StoreContext = Depends(get_context),
    storage: HybridStorage = Depends(get_storage),
):
    user = await storage.get_user_by_username(payload.username)
    if user and await run_in_threadpool(verify_password, payload.password, user.password):
        await start_session(response, context, user.id)
        return AuthResponse(
            message="Login successful",
            user=UserSummary(id=user.id, username=user.username),
        )
    logger.info("Failed login for %s", payload.username)
    raise AuthError("Invalid credentials")


@router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    context: StoreContext = Depends(get_context),
    session_id: Optional[str] = Depends(get_session_id),
):
    if session_id:
        await context.sessions.destroy(session_id)
    response.delete_cookie(context.settings.session_cookie_name)
    return MessageResponse(message="Logout successful")


@router.get("/user", response_model=CurrentUserResponse)
async def current_user(user_id: str = Depends(require_user_id)):
    return CurrentUserResponse(user_id=user_id)


@router.get("/role", response_model=RoleResponse)
async def get_role(
    user_id: str = Depends(require_user_id),
    storage: HybridStorage = Depends(get_storage),
):
    user = await storage.get_user(user_id)
    if not user:
        raise NotFoundError("User not found")
    return RoleResponse(role=user.role)


@router.post("/role", response_model=SetRoleResponse)
async def set_role(
    payload: RoleRequest,
    user_id: str = Depends(require_user_id),
    storage: HybridStorage = Depends(get_storage),
):
    user = await storage.update_user_role(user_id, payload.role)
    return SetRoleResponse(message="Role updated successfully", role=user.role)


@router.get("/details", response_model=Profile)
async def get_details(
    user_id: str = Depends(require_user_id),
    storage: HybridStorage = Depends(get_storage),
):
    data = await storage.get_user_with_role_data(user_id)
    if not data:
        raise NotFoundError("User not found")
    user, profile = data
    if user.role is None:
        raise ValidationError("Select a role before requesting details")
    if profile is None:
        raise NotFoundError("Details not found")
    return _profile_view(user.role, profile)


@router.post("/details", response_model=SetDetailsResponse)
async def set_details(
    body: dict[str, Any] = Body(...),
    user_id: str = Depends(require_user_id),
    storage: HybridStorage = Depends(get_storage),
):
    user = await storage.get_user(user_id)
    if not user:
        raise NotFoundError("User not found")
    if user.role is None:
        raise ValidationError("Select a role before submitting details")

    try:
        details = DETAILS_MODELS[user.role].model_validate(body)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"])
        raise ValidationError(f"{field}: {first['msg']}" if field else first["msg"]) from exc

    values = details.model_dump(mode="json", exclude_unset=True)
    patient_id = values.get("patient_id")
    if user.role == Role.FAMILY and patient_id and not await storage.get_patient(patient_id):
        raise ValidationError("patientId: no patient with this id")

    get_profile, create_profile, update_profile = _profile_operations(storage, user.role)
    if await get_profile(user_id):
        profile = await update_profile(user_id, values)
    else:
        profile = await create_profile(user_id, values)
    return SetDetailsResponse(
        message="Details saved successfully",
        details=_profile_view(user.role, profile),
    )


@router.get("/profile-status", response_model=ProfileStatusResponse)
async def profile_status(
    user_id: str = Depends(require_user_id),
    storage: HybridStorage = Depends(get_storage),
):
    data = await storage.get_user_with_role_data(user_id)
    if not data:
        raise NotFoundError("User not found")
    user, profile = data
    has_details = profile is not None
    return ProfileStatusResponse(
        has_role=user.role is not None,
        role=user.role,
        has_details=has_details,
        redirect_path=_redirect_path(user.role, has_details),
    )


@health_router.get("/health", response_model=HealthResponse)
async def health(storage: HybridStorage = Depends(get_storage)):
    return HealthResponse(
        status="ok", storage=StorageStatusView.model_validate(storage.status().as_dict())
    )
