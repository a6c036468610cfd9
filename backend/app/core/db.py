from sqlmodel import Session, create_engine, select

from app import crud
from app.core.config import settings
from app.models import User, UserCreate, UserRole
from app.services.progress import seed_step_catalog


def _connect_args(url: str) -> dict[str, object]:
    # SQLite connections are shared with the background task threadpool.
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.SQLALCHEMY_DATABASE_URI,
    connect_args=_connect_args(settings.SQLALCHEMY_DATABASE_URI),
    pool_pre_ping=True,
)


def init_db(session: Session) -> None:
    """Create the first agency account and the step catalog if missing.

    Tables come from Alembic migrations (or ``SQLModel.metadata.create_all``
    in tests).
    """
    user = session.exec(
        select(User).where(User.email == settings.FIRST_AGENCY_EMAIL)
    ).first()
    if not user:
        user_in = UserCreate(
            email=settings.FIRST_AGENCY_EMAIL,
            password=settings.FIRST_AGENCY_PASSWORD,
            role=UserRole.AGENCY,
        )
        crud.create_user(session=session, user_create=user_in)

    seed_step_catalog(session)
