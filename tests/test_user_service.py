import pytest
from fastapi.testclient import TestClient

from canteen import config
from canteen.security import decode_token
from canteen.user_service.main import app
from conftest import auth_headers

PASSWORD = "Secret@123"
ADMIN = auth_headers("admin-1", role="admin")


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def register(client, email="asha@example.com", password=PASSWORD, name="Asha", **extra):
    return client.post("/register", json={"email": email, "password": password, "name": name, **extra})


def login(client, email="asha@example.com", password=PASSWORD):
    return client.post("/login", json={"email": email, "password": password})


def test_register_and_login(client):
    res = register(client, email="Asha@Example.com")
    assert res.status_code == 200
    assert res.json()["email_confirmed"] is True

    res = login(client)
    assert res.status_code == 200
    body = res.json()
    assert body["email"] == "asha@example.com"
    assert body["role"] == "customer"
    assert body["token_type"] == "bearer"
    payload = decode_token(f"Bearer {body['access_token']}")
    assert payload["id"] == body["id"]


def test_duplicate_email_rejected(client):
    register(client)
    res = register(client)
    assert res.status_code == 400
    assert res.json()["detail"] == "Email exists"


@pytest.mark.parametrize("password", ["Sh@1", "lowercase@123", "UPPERCASE@123", "NoDigits@abc", "NoSpecial123"])
def test_weak_passwords_rejected(client, password):
    assert register(client, password=password).status_code == 422


@pytest.mark.parametrize("field, value", [("email", "not-an-email"), ("name", "   "), ("phone", "12ab")])
def test_invalid_fields_rejected(client, field, value):
    assert register(client, **{field: value}).status_code == 422


def test_wrong_password(client):
    register(client)
    res = login(client, password="Wrong@1234")
    assert res.status_code == 401


def test_unconfirmed_email_blocks_login(client, monkeypatch):
    monkeypatch.setattr(config, "REQUIRE_EMAIL_CONFIRMATION", True)
    res = register(client)
    assert res.json()["email_confirmed"] is False
    user_id = res.json()["id"]

    res = login(client)
    assert res.status_code == 403
    assert res.json()["detail"] == "Email not confirmed"

    assert client.put(f"/users/{user_id}/confirm", headers=ADMIN).status_code == 200
    assert login(client).status_code == 200


def test_verify_token(client):
    register(client)
    token = login(client).json()["access_token"]

    res = client.get("/verify", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.json()["sub"] == "asha@example.com"

    assert client.get("/verify").status_code == 401
    assert client.get("/verify", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_profile_read_and_update(client):
    register(client, phone="+919876543210")
    token = login(client).json()["access_token"]
    headers = {"Authorization": f"Bearer {token}"}

    res = client.get("/profiles/me", headers=headers)
    assert res.status_code == 200
    assert res.json()["phone"] == "+919876543210"

    res = client.put("/profiles/me", json={"name": "Asha K"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["name"] == "Asha K"
    assert res.json()["phone"] == "+919876543210"

    assert client.get("/profiles/me").status_code == 401


def test_role_update(client):
    user_id = register(client).json()["id"]
    assert client.put(f"/users/{user_id}/role", params={"role": "superuser"}, headers=ADMIN).status_code == 400
    assert client.put(f"/users/{user_id}/role", params={"role": "admin"}, headers=ADMIN).status_code == 200
    assert login(client).json()["role"] == "admin"
    assert client.put("/users/missing/role", params={"role": "admin"}, headers=ADMIN).status_code == 404


@pytest.mark.parametrize("path, params", [("role", {"role": "admin"}), ("confirm", {})])
def test_only_admin_changes_accounts(client, monkeypatch, path, params):
    monkeypatch.setattr(config, "REQUIRE_EMAIL_CONFIRMATION", True)
    user_id = register(client).json()["id"]
    own_token = auth_headers(user_id)

    assert client.put(f"/users/{user_id}/{path}", params=params).status_code == 401
    assert client.put(f"/users/{user_id}/{path}", params=params, headers=own_token).status_code == 403

    # still an unconfirmed customer
    assert login(client).status_code == 403
    monkeypatch.setattr(config, "REQUIRE_EMAIL_CONFIRMATION", False)
    assert login(client).json()["role"] == "customer"
