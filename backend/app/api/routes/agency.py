"""Back-office views of customers for agency staff."""

import uuid
from typing import Any

from fastapi import APIRouter, HTTPException
from sqlmodel import col, func, select

from app import crud
from app.api.deps import AgencyUser, SessionDep
from app.models import (
    CustomerDetailPublic,
    CustomerProgressUpdate,
    ResidencyProgressPublic,
    User,
    UserProfile,
    UserRole,
    UsersWithProfilesPublic,
)
from app.services import progress as progress_service
from app.services.exceptions import RecordNotFoundError

router = APIRouter(prefix="/agency", tags=["agency"])


def get_customer(session: SessionDep, customer_id: uuid.UUID) -> User:
    customer = session.get(User, customer_id)
    if not customer or customer.is_agency:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


@router.get("/customers", response_model=UsersWithProfilesPublic)
def read_customers(
    session: SessionDep, current_user: AgencyUser, skip: int = 0, limit: int = 100
) -> Any:
    count = session.exec(
        select(func.count())
        .select_from(User)
        .where(User.role == UserRole.CUSTOMER.value)
    ).one()
    rows = session.exec(
        select(User, UserProfile)
        .outerjoin(UserProfile, col(UserProfile.user_id) == User.id)
        .where(User.role == UserRole.CUSTOMER.value)
        .order_by(col(User.created_at).desc())
        .offset(skip)
        .limit(limit)
    ).all()
    return UsersWithProfilesPublic(
        data=[crud.user_with_profile(user, profile) for user, profile in rows],
        count=count,
    )


@router.get("/customers/{customer_id}", response_model=CustomerDetailPublic)
def read_customer(
    session: SessionDep, current_user: AgencyUser, customer_id: uuid.UUID
) -> Any:
    customer = get_customer(session, customer_id)
    profile = crud.get_user_profile(session=session, user_id=customer.id)
    documents = crud.get_documents(session=session, user_id=customer.id)
    return CustomerDetailPublic(
        user=crud.user_with_profile(customer, profile),
        documents=documents.data,
        progress=progress_service.get_progress(session=session, user_id=customer.id),
    )


@router.put("/customers/{customer_id}/progress", response_model=ResidencyProgressPublic)
def update_customer_progress(
    *,
    session: SessionDep,
    current_user: AgencyUser,
    customer_id: uuid.UUID,
    progress_in: CustomerProgressUpdate,
) -> Any:
    customer = get_customer(session, customer_id)
    try:
        return progress_service.update_step(
            session=session,
            user_id=customer.id,
            step_id=progress_in.step_id,
            status=progress_in.status,
            notes=progress_in.notes,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
