import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel
from sqlmodel import Session, col, func, select

from app.core.retry import with_retry
from app.core.security import get_password_hash, verify_password
from app.models import (
    AnalysisResult,
    Document,
    DocumentPublic,
    DocumentsPublic,
    User,
    UserCreate,
    UserProfile,
    UserProfileAgencyPublic,
    UserProfilePublic,
    UserProfileUpdate,
    UserPublic,
    UsersWithProfilesPublic,
    UserUpdateMe,
    UserWithProfilePublic,
    get_datetime_utc,
)


def create_user(*, session: Session, user_create: UserCreate) -> User:
    db_obj = User.model_validate(
        user_create,
        update={
            "hashed_password": get_password_hash(user_create.password),
            "role": user_create.role.value,
        },
    )
    session.add(db_obj)
    session.commit()
    session.refresh(db_obj)
    return db_obj


def update_user(*, session: Session, db_user: User, user_in: UserUpdateMe) -> User:
    user_data = user_in.model_dump(exclude_unset=True)
    db_user.sqlmodel_update(user_data)
    session.add(db_user)
    session.commit()
    session.refresh(db_user)
    return db_user


def get_user_by_email(*, session: Session, email: str) -> User | None:
    statement = select(User).where(User.email == email)
    session_user = session.exec(statement).first()
    return session_user


# Dummy hash to use for timing attack prevention when user is not found
DUMMY_HASH = "$argon2id$v=19$m=65536,t=3,p=4$MjQyZWE1MzBjYjJlZTI0Yw$YTU4NGM5ZTZmYjE2NzZlZjY0ZWY3ZGRkY2U2OWFjNjk"


def authenticate(*, session: Session, email: str, password: str) -> User | None:
    db_user = get_user_by_email(session=session, email=email)
    if not db_user:
        # Prevent timing attacks by running password verification even when user doesn't exist
        verify_password(password, DUMMY_HASH)
        return None
    verified, updated_password_hash = verify_password(password, db_user.hashed_password)
    if not verified:
        return None
    if updated_password_hash:
        db_user.hashed_password = updated_password_hash
        session.add(db_user)
        session.commit()
        session.refresh(db_user)
    return db_user


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def profile_public(
    user: User, profile: UserProfile, *, include_internal: bool = False
) -> UserProfilePublic:
    """Profile view for the API. Internal agency notes only when asked for."""
    schema = UserProfileAgencyPublic if include_internal else UserProfilePublic
    return schema.model_validate(profile, update={"email": user.email})


def _select_profile(session: Session, user_id: uuid.UUID) -> UserProfile | None:
    statement = select(UserProfile).where(UserProfile.user_id == user_id)
    return session.exec(statement).first()


@with_retry()
def get_user_profile(*, session: Session, user_id: uuid.UUID) -> UserProfile | None:
    return _select_profile(session, user_id)


@with_retry()
def upsert_user_profile(
    *, session: Session, user_id: uuid.UUID, profile_in: UserProfileUpdate
) -> UserProfile:
    """Create or update the profile keyed by ``user_id``; unset fields are left alone."""
    update_data = {
        key: _column_value(value)
        for key, value in profile_in.model_dump(exclude_unset=True).items()
    }
    profile = _select_profile(session, user_id)
    if profile is None:
        profile = UserProfile(user_id=user_id)
    profile.sqlmodel_update(update_data)
    profile.updated_at = get_datetime_utc()
    session.add(profile)
    session.commit()
    session.refresh(profile)
    return profile


@with_retry()
def get_users_with_profiles(
    *, session: Session, skip: int = 0, limit: int = 100
) -> UsersWithProfilesPublic:
    count = session.exec(select(func.count()).select_from(User)).one()
    statement = (
        select(User, UserProfile)
        .outerjoin(UserProfile, col(UserProfile.user_id) == User.id)
        .order_by(col(User.created_at).desc())
        .offset(skip)
        .limit(limit)
    )
    data = [
        user_with_profile(user, profile)
        for user, profile in session.exec(statement).all()
    ]
    return UsersWithProfilesPublic(data=data, count=count)


def user_with_profile(user: User, profile: UserProfile | None) -> UserWithProfilePublic:
    return UserWithProfilePublic(
        **UserPublic.model_validate(user).model_dump(),
        profile=(
            profile_public(user, profile, include_internal=True)
            if profile is not None
            else None
        ),
    )


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@with_retry()
def create_document(
    *,
    session: Session,
    user_id: uuid.UUID,
    file_path: str,
    analysis: AnalysisResult,
) -> Document:
    document = Document(
        user_id=user_id,
        document_type=analysis.document_type.value,
        analysis_result=analysis.model_dump(mode="json", by_alias=True),
        file_path=file_path,
    )
    session.add(document)
    session.commit()
    session.refresh(document)
    return document


@with_retry()
def get_documents(
    *, session: Session, user_id: uuid.UUID, skip: int = 0, limit: int = 100
) -> DocumentsPublic:
    count_statement = (
        select(func.count()).select_from(Document).where(Document.user_id == user_id)
    )
    count = session.exec(count_statement).one()
    statement = (
        select(Document)
        .where(Document.user_id == user_id)
        .order_by(col(Document.created_at).desc())
        .offset(skip)
        .limit(limit)
    )
    documents = session.exec(statement).all()
    return DocumentsPublic(
        data=[DocumentPublic.model_validate(document) for document in documents],
        count=count,
    )


@with_retry()
def set_document_notes(*, session: Session, document: Document, notes: str) -> Document:
    document.agency_notes = notes
    session.add(document)
    session.commit()
    session.refresh(document)
    return document
