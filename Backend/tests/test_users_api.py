"""Signup, login and profile settings."""

from conftest import auth_headers, make_user


class TestSignup:

    async def test_signup_creates_free_account(self, client):
        response = await client.post(
            "/api/auth/signup",
            json={"name": "Ada Lovelace", "email": "Ada@Example.com", "password": "secret123"},
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == "ada@example.com"
        assert data["user"]["username"] == "ada-lovelace"
        assert data["token"]
        assert response.headers["set-cookie"].startswith("session=")

        me = await client.get("/api/user/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.status_code == 200
        assert me.json()["data"]["plan"] == "FREE"

    async def test_duplicate_email(self, client, async_session):
        await make_user(async_session, email="ada@example.com")
        response = await client.post(
            "/api/auth/signup",
            json={"name": "Ada", "email": "ada@example.com", "password": "secret123"},
        )
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "User already exists"

    async def test_usernames_are_suffixed_when_taken(self, client, async_session):
        await make_user(async_session, username="ada")
        response = await client.post(
            "/api/auth/signup",
            json={"name": "Ada", "email": "ada2@example.com", "password": "secret123"},
        )
        assert response.json()["data"]["user"]["username"] == "ada1"

    async def test_missing_fields(self, client):
        response = await client.post("/api/auth/signup", json={"email": "ada@example.com"})
        assert response.status_code == 400
        assert response.json() == {
            "error": {"code": "INVALID_INPUT", "message": "Missing required fields"},
            "status": "error",
        }

    async def test_short_password(self, client):
        response = await client.post(
            "/api/auth/signup", json={"name": "Ada", "email": "ada@example.com", "password": "123"}
        )
        assert response.status_code == 400


class TestLogin:

    async def test_login(self, client, async_session):
        await make_user(async_session, email="ada@example.com")
        response = await client.post("/api/auth/login", json={"email": "ADA@example.com", "password": "secret123"})
        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "ada@example.com"

    async def test_wrong_password(self, client, async_session):
        await make_user(async_session, email="ada@example.com")
        response = await client.post("/api/auth/login", json={"email": "ada@example.com", "password": "nope"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"

    async def test_unknown_user(self, client):
        response = await client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "x"})
        assert response.status_code == 401

    async def test_garbage_token_is_rejected(self, client):
        response = await client.get("/api/user/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_REQUIRED"


class TestSettings:

    async def test_update_profile(self, client, async_session):
        user = await make_user(async_session)
        response = await client.patch(
            "/api/user/settings",
            json={"username": "new_name", "timezone": "Europe/Berlin"},
            headers=auth_headers(user),
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["username"] == "new_name"
        assert data["timezone"] == "Europe/Berlin"

    async def test_username_taken(self, client, async_session):
        user = await make_user(async_session)
        await make_user(async_session, email="other@example.com", username="taken")
        response = await client.patch("/api/user/settings", json={"username": "taken"}, headers=auth_headers(user))
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Username is already taken"

    async def test_invalid_timezone(self, client, async_session):
        user = await make_user(async_session)
        response = await client.patch(
            "/api/user/settings", json={"timezone": "Mars/Olympus"}, headers=auth_headers(user)
        )
        assert response.status_code == 400

    async def test_messaging_settings_hide_secrets(self, client, async_session):
        user = await make_user(async_session)
        response = await client.put(
            "/api/user/settings",
            json={"whatsappEnabled": True, "evolutionApiKey": "evo-key", "evolutionInstanceName": "acme"},
            headers=auth_headers(user),
        )
        data = response.json()["data"]
        assert data["whatsappEnabled"] is True
        assert data["hasEvolutionApiKey"] is True
        assert "evolutionApiKey" not in data
