from boardsync.auth import TokenService


def test_register_returns_token_and_summary(client):
    res = client.post(
        "/api/auth/register",
        json={"name": "  Alice  ", "email": "Alice@Example.com", "password": "secret123"},
    )
    assert res.status_code == 201
    data = res.json()["data"]
    assert data["user"]["name"] == "Alice"
    assert data["user"]["email"] == "alice@example.com"
    assert "passwordHash" not in data["user"]
    assert data["token"]


def test_register_rejects_duplicate_email(client, register):
    user = register("Alice")
    res = client.post(
        "/api/auth/register",
        json={"name": "Other", "email": user["email"], "password": "secret123"},
    )
    assert res.status_code == 400
    assert res.json() == {"success": False, "message": "Email already registered"}


def test_register_validates_fields(client):
    res = client.post("/api/auth/register", json={"name": "A", "email": "a@example.com", "password": "secret123"})
    assert res.status_code == 400
    assert res.json()["success"] is False


def test_login_and_me(client, register):
    user = register("Bob")
    res = client.post("/api/auth/login", json={"email": user["email"], "password": "secret123"})
    assert res.status_code == 200
    token = res.json()["data"]["token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["id"] == user["id"]


def test_login_with_wrong_password(client, register):
    user = register("Bob")
    res = client.post("/api/auth/login", json={"email": user["email"], "password": "nope-nope"})
    assert res.status_code == 401


def test_missing_token_is_unauthorized(client):
    res = client.get("/api/boards")
    assert res.status_code == 401
    assert res.json()["success"] is False


def test_wrong_scheme_is_unauthorized(client, register):
    user = register()
    res = client.get("/api/boards", headers={"Authorization": f"Token {user['token']}"})
    assert res.status_code == 401


def test_token_with_invalid_signature_is_rejected(client, register):
    user = register()
    forged = TokenService("some-other-secret").issue(user["id"])
    res = client.get("/api/boards", headers={"Authorization": f"Bearer {forged}"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid token. Please login again."


def test_expired_token_is_rejected(client, register, settings):
    user = register()
    expired = TokenService(settings.jwt_secret, ttl_seconds=-60).issue(user["id"])
    res = client.get("/api/boards", headers={"Authorization": f"Bearer {expired}"})
    assert res.status_code == 401
    assert res.json()["message"] == "Token has expired. Please login again."


def test_token_for_unknown_user_is_rejected(client, settings):
    token = TokenService(settings.jwt_secret).issue("no-such-user")
    res = client.get("/api/boards", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401


def test_malformed_token_is_rejected(client):
    res = client.get("/api/boards", headers={"Authorization": "Bearer not.a.jwt"})
    assert res.status_code == 401
