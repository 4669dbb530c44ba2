"""
Tests for login, sessions, admin user management and the create_user script.
"""

from unittest.mock import patch

import create_user
from auth import db as auth_db

PASSWORD = "correct-horse-battery"


class TestLogin:

    def test_json_login(self, anon_client):
        auth_db.create_user("Pat@Example.com", "Pat", "regular", PASSWORD)

        response = anon_client.post("/login", json={"email": "pat@example.com", "password": PASSWORD})

        assert response.status_code == 200
        user = response.get_json()
        assert user["email"] == "pat@example.com"
        assert user["role"] == "regular"
        assert "password_hash" not in user
        assert anon_client.get("/api/auth/me").get_json()["username"] == "Pat"
        assert auth_db.get_user_by_email("pat@example.com")["last_login_at"] is not None

    def test_wrong_password(self, anon_client):
        auth_db.create_user("pat@example.com", "Pat", "regular", PASSWORD)
        response = anon_client.post("/login", json={"email": "pat@example.com", "password": "nope"})
        assert response.status_code == 401
        assert response.get_json() == {"error": "Invalid email or password"}

    def test_missing_fields(self, anon_client):
        response = anon_client.post("/login", json={"email": ""})
        assert response.status_code == 401

    def test_non_string_password(self, anon_client):
        auth_db.create_user("pat@example.com", "Pat", "regular", "12345678")
        response = anon_client.post("/login", json={"email": "pat@example.com", "password": 12345678})
        assert response.status_code == 401
        assert response.get_json() == {"error": "Invalid email or password"}

    def test_form_login_redirects(self, anon_client):
        auth_db.create_user("pat@example.com", "Pat", "regular", PASSWORD)

        response = anon_client.post("/login?next=/api/okrs", data={"email": "pat@example.com", "password": PASSWORD})

        assert response.status_code == 302
        assert response.headers["Location"].endswith("/api/okrs")

    def test_form_login_ignores_offsite_next(self, anon_client):
        auth_db.create_user("pat@example.com", "Pat", "regular", PASSWORD)
        response = anon_client.post("/login?next=//evil.example", data={"email": "pat@example.com",
                                                                         "password": PASSWORD})
        assert response.headers["Location"].endswith("/")
        assert "evil" not in response.headers["Location"]

    def test_form_login_error(self, anon_client):
        response = anon_client.post("/login", data={"email": "x@example.com", "password": "nope"})
        assert response.status_code == 200
        assert b"Invalid email or password" in response.data

    def test_login_page(self, anon_client):
        response = anon_client.get("/login")
        assert response.status_code == 200
        assert b"Sign in" in response.data

    def test_logout(self, client):
        assert client.get("/api/auth/me").status_code == 200

        response = client.get("/logout")

        assert response.status_code == 302
        assert client.get("/api/auth/me").status_code == 401

    def test_inactive_user_cannot_login(self, anon_client):
        user = auth_db.create_user("pat@example.com", "Pat", "regular", PASSWORD)
        auth_db.deactivate_user(user["id"])
        response = anon_client.post("/login", json={"email": "pat@example.com", "password": PASSWORD})
        assert response.status_code == 401


class TestUserStore:

    def test_duplicate_email(self):
        assert auth_db.create_user("pat@example.com", "Pat", "regular", PASSWORD)
        assert auth_db.create_user("PAT@example.com", "Pat 2", "regular", PASSWORD) is None

    def test_user_without_password_cannot_verify(self):
        user = auth_db.create_user("sso@example.com", "Sso")
        assert auth_db.verify_password(user, "anything") is False

    def test_set_password(self):
        user = auth_db.create_user("pat@example.com", "Pat", "regular", PASSWORD)
        assert auth_db.set_user_password(user["id"], "new-password-1")
        user = auth_db.get_user_by_id(user["id"])
        assert auth_db.verify_password(user, "new-password-1")
        assert not auth_db.verify_password(user, PASSWORD)


class TestAdminEndpoints:

    def test_regular_user_forbidden(self, client):
        response = client.get("/api/admin/users")
        assert response.status_code == 403

    def test_anonymous_unauthorized(self, anon_client):
        assert anon_client.get("/api/admin/users").status_code == 401

    def test_list_and_create(self, admin_client):
        response = admin_client.post("/api/admin/users", json={
            "email": "New@Example.com", "username": "Newbie", "password": "long-enough",
        })
        assert response.status_code == 201
        assert response.get_json()["email"] == "new@example.com"
        assert response.get_json()["role"] == "regular"

        users = admin_client.get("/api/admin/users").get_json()
        assert sorted(u["username"] for u in users) == ["Ada", "Newbie"]

    def test_create_validation(self, admin_client):
        url = "/api/admin/users"
        assert admin_client.post(url, json={"email": "a@b.com", "password": "long-enough"}).status_code == 400
        assert admin_client.post(url, json={"email": "a@b.com", "username": "A", "password": "short"}).status_code == 400
        assert admin_client.post(url, json={"email": "a@b.com", "username": "A", "password": "long-enough",
                                            "role": "owner"}).status_code == 400
        assert admin_client.post(url, json={"email": "a@b.com", "username": "A",
                                            "password": 123456789}).status_code == 400
        assert admin_client.post(url, json={"email": "admin@example.com", "username": "A",
                                            "password": "long-enough"}).status_code == 409

    def test_change_role(self, admin_client):
        user = auth_db.create_user("pat@example.com", "Pat", "regular", PASSWORD)

        response = admin_client.post(f"/api/admin/users/{user['id']}/role", json={"role": "admin"})

        assert response.status_code == 200
        assert auth_db.get_user_by_id(user["id"])["role"] == "admin"
        assert admin_client.post("/api/admin/users/999/role", json={"role": "admin"}).status_code == 404

    def test_cannot_demote_self(self, admin_client):
        me = admin_client.get("/api/auth/me").get_json()
        response = admin_client.post(f"/api/admin/users/{me['id']}/role", json={"role": "regular"})
        assert response.status_code == 400

    def test_deactivate_and_reactivate(self, admin_client, anon_client):
        user = auth_db.create_user("pat@example.com", "Pat", "regular", PASSWORD)
        login = {"email": "pat@example.com", "password": PASSWORD}

        assert admin_client.post(f"/api/admin/users/{user['id']}/deactivate").status_code == 200
        assert anon_client.post("/login", json=login).status_code == 401

        assert admin_client.post(f"/api/admin/users/{user['id']}/activate").status_code == 200
        assert anon_client.post("/login", json=login).status_code == 200

    def test_cannot_deactivate_self(self, admin_client):
        me = admin_client.get("/api/auth/me").get_json()
        assert admin_client.post(f"/api/admin/users/{me['id']}/deactivate").status_code == 400


class TestCreateUserScript:

    def test_creates_admin(self):
        with patch("create_user.getpass.getpass", return_value="long-enough"):
            assert create_user.main(["boss@example.com", "Boss", "--role", "admin"]) == 0

        user = auth_db.get_user_by_email("boss@example.com")
        assert user["role"] == "admin"
        assert auth_db.verify_password(user, "long-enough")

    def test_rejects_short_password(self):
        with patch("create_user.getpass.getpass", return_value="short"):
            assert create_user.main(["boss@example.com", "Boss"]) == 1
        assert auth_db.get_user_by_email("boss@example.com") is None

    def test_resets_existing_password(self):
        auth_db.create_user("boss@example.com", "Boss", "admin", PASSWORD)
        with patch("create_user.getpass.getpass", return_value="brand-new-pass"), \
                patch("builtins.input", return_value="y"):
            assert create_user.main(["boss@example.com", "Boss"]) == 0

        assert auth_db.verify_password(auth_db.get_user_by_email("boss@example.com"), "brand-new-pass")


def test_health_is_public(anon_client):
    response = anon_client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "database": "connected"}
