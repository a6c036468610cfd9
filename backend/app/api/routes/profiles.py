import uuid
from typing import Any

from fastapi import APIRouter, HTTPException
from sqlmodel import Session

from app import crud
from app.api.deps import AgencyUser, CurrentUser, SessionDep
from app.models import (
    User,
    UserProfileAgencyPublic,
    UserProfilePublic,
    UserProfileUpdate,
)

router = APIRouter(prefix="/profiles", tags=["profiles"])

AGENCY_ONLY_FIELDS = {"internal_agency_notes", "agency_to_client_notes"}


def get_user_or_404(session: Session, user_id: uuid.UUID) -> User:
    user = session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/me", response_model=UserProfilePublic)
def read_my_profile(session: SessionDep, current_user: CurrentUser) -> Any:
    profile = crud.get_user_profile(session=session, user_id=current_user.id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return crud.profile_public(current_user, profile)


@router.put("/me", response_model=UserProfilePublic)
def update_my_profile(
    *, session: SessionDep, current_user: CurrentUser, profile_in: UserProfileUpdate
) -> Any:
    """
    Create or update the caller's profile. Agency-written notes are read-only here.
    """
    restricted = AGENCY_ONLY_FIELDS & profile_in.model_fields_set
    if restricted and not current_user.is_agency:
        raise HTTPException(
            status_code=403,
            detail=f"Not allowed to set: {', '.join(sorted(restricted))}",
        )
    profile = crud.upsert_user_profile(
        session=session, user_id=current_user.id, profile_in=profile_in
    )
    return crud.profile_public(current_user, profile)


@router.get("/{user_id}", response_model=UserProfileAgencyPublic)
def read_user_profile(
    session: SessionDep, current_user: AgencyUser, user_id: uuid.UUID
) -> Any:
    user = get_user_or_404(session, user_id)
    profile = crud.get_user_profile(session=session, user_id=user.id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return crud.profile_public(user, profile, include_internal=True)


@router.put("/{user_id}", response_model=UserProfileAgencyPublic)
def update_user_profile(
    *,
    session: SessionDep,
    current_user: AgencyUser,
    user_id: uuid.UUID,
    profile_in: UserProfileUpdate,
) -> Any:
    user = get_user_or_404(session, user_id)
    profile = crud.upsert_user_profile(
        session=session, user_id=user.id, profile_in=profile_in
    )
    return crud.profile_public(user, profile, include_internal=True)
