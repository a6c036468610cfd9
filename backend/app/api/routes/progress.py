import uuid
from typing import Any

from fastapi import APIRouter, HTTPException

from app.api.deps import AgencyUser, CurrentUser, SessionDep
from app.models import ResidencyProgressPublic, ResidencyStepUpdate, User
from app.services import progress as progress_service
from app.services.exceptions import RecordNotFoundError

router = APIRouter(prefix="/progress", tags=["progress"])


@router.get("/me", response_model=ResidencyProgressPublic | None)
def read_my_progress(session: SessionDep, current_user: CurrentUser) -> Any:
    """
    The caller's residency progress, or null if the process has not started.
    """
    return progress_service.get_progress(session=session, user_id=current_user.id)


@router.get("/{user_id}", response_model=ResidencyProgressPublic | None)
def read_user_progress(
    session: SessionDep, current_user: AgencyUser, user_id: uuid.UUID
) -> Any:
    if not session.get(User, user_id):
        raise HTTPException(status_code=404, detail="User not found")
    return progress_service.get_progress(session=session, user_id=user_id)


@router.post("/{user_id}", response_model=ResidencyProgressPublic)
def provision_user_progress(
    session: SessionDep, current_user: AgencyUser, user_id: uuid.UUID
) -> Any:
    """
    Start the residency process for a customer with every step pending.
    """
    if not session.get(User, user_id):
        raise HTTPException(status_code=404, detail="User not found")
    return progress_service.provision_progress(session=session, user_id=user_id)


@router.patch("/{user_id}/steps/{step_id}", response_model=ResidencyProgressPublic)
def update_user_step(
    *,
    session: SessionDep,
    current_user: AgencyUser,
    user_id: uuid.UUID,
    step_id: uuid.UUID,
    step_in: ResidencyStepUpdate,
) -> Any:
    try:
        return progress_service.update_step(
            session=session,
            user_id=user_id,
            step_id=step_id,
            status=step_in.status,
            notes=step_in.notes,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
