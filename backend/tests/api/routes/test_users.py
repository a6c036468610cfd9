from fastapi.testclient import TestClient
from sqlmodel import Session, select

from app import crud
from app.core.config import settings
from app.core.security import verify_password
from app.models import User, UserCreate, UserRole
from tests.utils.user import create_user_with_headers
from tests.utils.utils import random_email, random_lower_string

USERS_URL = f"{settings.API_V1_STR}/users"


def test_register_user(client: TestClient, db: Session) -> None:
    email = random_email()
    password = random_lower_string()
    r = client.post(
        f"{USERS_URL}/signup",
        json={"email": email, "password": password, "full_name": "Sofía Ruiz"},
    )
    assert r.status_code == 200
    created = r.json()
    assert created["email"] == email
    assert created["role"] == "customer"

    user = db.exec(select(User).where(User.email == email)).first()
    assert user is not None
    verified, _ = verify_password(password, user.hashed_password)
    assert verified


def test_register_existing_email(client: TestClient, db: Session) -> None:
    user, _ = create_user_with_headers(client, db)
    r = client.post(
        f"{USERS_URL}/signup",
        json={"email": user.email, "password": random_lower_string()},
    )
    assert r.status_code == 400


def test_read_me(client: TestClient, customer_token_headers: dict[str, str]) -> None:
    r = client.get(f"{USERS_URL}/me", headers=customer_token_headers)
    assert r.status_code == 200
    current_user = r.json()
    assert current_user["email"] == settings.EMAIL_TEST_USER
    assert current_user["role"] == "customer"
    assert current_user["is_active"] is True


def test_update_me(client: TestClient, db: Session) -> None:
    _, headers = create_user_with_headers(client, db)
    new_email = random_email()
    r = client.patch(
        f"{USERS_URL}/me",
        headers=headers,
        json={"full_name": "Updated Name", "email": new_email},
    )
    assert r.status_code == 200
    assert r.json()["full_name"] == "Updated Name"
    assert r.json()["email"] == new_email


def test_update_me_email_taken(client: TestClient, db: Session) -> None:
    other, _ = create_user_with_headers(client, db)
    _, headers = create_user_with_headers(client, db)
    r = client.patch(f"{USERS_URL}/me", headers=headers, json={"email": other.email})
    assert r.status_code == 409


def test_update_password_me(client: TestClient, db: Session) -> None:
    password = random_lower_string()
    email = random_email()
    crud.create_user(
        session=db,
        user_create=UserCreate(email=email, password=password),
    )
    login = client.post(
        f"{settings.API_V1_STR}/login/access-token",
        data={"username": email, "password": password},
    )
    headers = {"Authorization": f"Bearer {login.json()['access_token']}"}
    new_password = random_lower_string()

    r = client.patch(
        f"{USERS_URL}/me/password",
        headers=headers,
        json={"current_password": "wrong-password", "new_password": new_password},
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Incorrect password"

    r = client.patch(
        f"{USERS_URL}/me/password",
        headers=headers,
        json={"current_password": password, "new_password": password},
    )
    assert r.status_code == 400

    r = client.patch(
        f"{USERS_URL}/me/password",
        headers=headers,
        json={"current_password": password, "new_password": new_password},
    )
    assert r.status_code == 200
    assert r.json()["message"] == "Password updated successfully"


def test_read_users_as_agency(
    client: TestClient, agency_token_headers: dict[str, str]
) -> None:
    r = client.get(f"{USERS_URL}/", headers=agency_token_headers)
    assert r.status_code == 200
    content = r.json()
    assert content["count"] >= 1
    assert all("profile" in user for user in content["data"])


def test_read_users_as_customer(
    client: TestClient, customer_token_headers: dict[str, str]
) -> None:
    r = client.get(f"{USERS_URL}/", headers=customer_token_headers)
    assert r.status_code == 403


def test_delete_user_cascades(
    client: TestClient, db: Session, agency_token_headers: dict[str, str]
) -> None:
    user, headers = create_user_with_headers(client, db)
    client.put(f"{settings.API_V1_STR}/profiles/me", headers=headers, json={"first_name": "X"})
    user_id = user.id

    r = client.delete(f"{USERS_URL}/{user_id}", headers=agency_token_headers)

    assert r.status_code == 200
    db.expire_all()
    assert db.get(User, user_id) is None
    assert crud.get_user_profile(session=db, user_id=user_id) is None


def test_agency_cannot_delete_self(
    client: TestClient, db: Session, agency_token_headers: dict[str, str]
) -> None:
    agency = crud.get_user_by_email(session=db, email=settings.FIRST_AGENCY_EMAIL)
    assert agency is not None
    r = client.delete(f"{USERS_URL}/{agency.id}", headers=agency_token_headers)
    assert r.status_code == 403


def test_delete_unknown_user(
    client: TestClient, db: Session
) -> None:
    _, headers = create_user_with_headers(client, db, role=UserRole.AGENCY)
    r = client.delete(
        f"{USERS_URL}/00000000-0000-0000-0000-000000000000", headers=headers
    )
    assert r.status_code == 404
