from datetime import timedelta
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import OAuth2PasswordRequestForm

from app import crud
from app.api.deps import CurrentUser, SessionDep
from app.core import security
from app.core.config import settings
from app.models import AgencyLogin, Token, User, UserPublic

router = APIRouter(tags=["login"])


def issue_token(user: User) -> Token:
    access_token_expires = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return Token(
        access_token=security.create_access_token(
            user.id, expires_delta=access_token_expires
        )
    )


@router.post("/login/access-token")
def login_access_token(
    session: SessionDep, form_data: Annotated[OAuth2PasswordRequestForm, Depends()]
) -> Token:
    """
    OAuth2 compatible token login, get an access token for future requests
    """
    user = crud.authenticate(
        session=session, email=form_data.username, password=form_data.password
    )
    if not user:
        raise HTTPException(status_code=400, detail="Incorrect email or password")
    elif not user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")
    return issue_token(user)


@router.post("/login/test-token", response_model=UserPublic)
def test_token(current_user: CurrentUser) -> Any:
    """
    Test access token
    """
    return current_user


@router.post("/auth/login")
def agency_login(session: SessionDep, login_in: AgencyLogin) -> Token:
    """
    JSON login for the agency back office. Customers are refused.
    """
    user = crud.authenticate(
        session=session, email=login_in.email, password=login_in.password
    )
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.is_agency:
        raise HTTPException(status_code=403, detail="Access denied")
    if not user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")
    return issue_token(user)
