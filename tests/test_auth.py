import pytest
from jose import jwt
from pymongo.errors import PyMongoError

import auth
from auth import (
    JWT_ALG,
    JWT_SECRET,
    Principal,
    authorize,
    create_access_token,
    login_rate_limiter,
    normalize_role_claim,
    validate_token,
)
from errors import EmailExists, InvalidCredentials, InvalidToken, RoleMappingError, TokenExpired, WrongCurrentPassword
from schemas import Role
from tests.conftest import bearer, make_user


@pytest.mark.parametrize("raw, expected", [
    ("USER", "ROLE_USER"),
    ("ROLE_ADMIN", "ROLE_ADMIN"),
    (None, "ROLE_USER"),
    ("admin", "ROLE_ADMIN"),
    (Role.ADMIN, "ROLE_ADMIN"),
    ("", "ROLE_USER"),
])
def test_normalize_role_claim(raw, expected):
    assert normalize_role_claim(raw) == expected


def test_normalize_role_claim_is_idempotent():
    once = normalize_role_claim("user")
    assert normalize_role_claim(once) == once


def test_token_carries_subject_and_prefixed_role():
    token = create_access_token("user@example.com", "USER")
    payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    assert payload["sub"] == "user@example.com"
    assert payload["role"] == "ROLE_USER"
    assert "exp" in payload


@pytest.mark.parametrize("stored, expected", [
    ("user", "ROLE_USER"),
    ("ADMIN", "ROLE_ADMIN"),
    ("Admin", "ROLE_ADMIN"),
    ("ROLE_admin", "ROLE_ADMIN"),
    ("superuser", "ROLE_USER"),
    ("", "ROLE_USER"),
])
def test_login_role_claim_always_prefixed(db, stored, expected):
    make_user(db)
    db["users"].update_one({"email": "alice@example.com"}, {"$set": {"role": stored}})
    result = auth.login(db, "alice@example.com", "secret123")
    assert result.role == expected
    claims = jwt.decode(result.token, JWT_SECRET, algorithms=[JWT_ALG])
    assert claims["role"] == expected


def test_login_failures_are_indistinguishable(db):
    make_user(db)
    with pytest.raises(InvalidCredentials) as unknown:
        auth.login(db, "nobody@example.com", "secret123")
    with pytest.raises(InvalidCredentials) as wrong:
        auth.login(db, "alice@example.com", "wrong-password")
    assert unknown.value.message == wrong.value.message


def test_login_email_match_is_exact(db):
    make_user(db)
    with pytest.raises(InvalidCredentials):
        auth.login(db, "ALICE@example.com", "secret123")


def test_register_creates_user_with_cart(db):
    result = auth.register(db, "Bob", "bob@example.com", "hunter22")
    assert result.role == "ROLE_USER"
    doc = db["users"].find_one({"email": "bob@example.com"})
    assert doc["role"] == "user"
    assert doc["password_hash"] != "hunter22"
    assert db["carts"].find_one({"user_id": str(doc["_id"])})["items"] == []


def test_register_duplicate_email_case_insensitive(db):
    auth.register(db, "Bob", "bob@example.com", "hunter22")
    with pytest.raises(EmailExists):
        auth.register(db, "Bobby", "BOB@Example.com", "hunter22")
    assert db["users"].count_documents({}) == 1


def test_register_survives_cart_failure(db, monkeypatch):
    def broken(database, user_id):
        raise PyMongoError("cart collection unavailable")

    monkeypatch.setattr(auth.cart_service, "get_or_create_cart", broken)
    result = auth.register(db, "Bob", "bob@example.com", "hunter22")
    assert result.email == "bob@example.com"
    assert db["carts"].count_documents({}) == 0


def test_change_password(db):
    user_id = make_user(db)
    principal = Principal(user_id=user_id, email="alice@example.com", name="Alice", role_claim="ROLE_USER")
    with pytest.raises(WrongCurrentPassword):
        auth.change_password(db, principal, "not-it", "newsecret")
    auth.change_password(db, principal, "secret123", "newsecret")
    assert auth.login(db, "alice@example.com", "newsecret").email == "alice@example.com"
    with pytest.raises(InvalidCredentials):
        auth.login(db, "alice@example.com", "secret123")


def test_validate_token(db):
    user_id = make_user(db)
    principal = validate_token(db, create_access_token("alice@example.com", Role.USER))
    assert principal.user_id == user_id
    assert principal.role_claim == "ROLE_USER"


def test_validate_token_rejects_expired_and_forged(db):
    make_user(db)
    with pytest.raises(TokenExpired):
        validate_token(db, create_access_token("alice@example.com", Role.USER, expires_minutes=-5))
    forged = jwt.encode({"sub": "alice@example.com", "role": "ROLE_ADMIN"}, "other-secret", algorithm=JWT_ALG)
    with pytest.raises(InvalidToken):
        validate_token(db, forged)
    with pytest.raises(InvalidToken):
        validate_token(db, create_access_token("ghost@example.com", Role.USER))


def test_authorize_is_exact_match():
    admin = Principal(user_id="1", email="a@x.io", name="A", role_claim="ROLE_ADMIN")
    user = Principal(user_id="2", email="u@x.io", name="U", role_claim="ROLE_USER")
    assert authorize(admin, Role.ADMIN)
    assert not authorize(user, Role.ADMIN)
    assert not authorize(admin, Role.USER)
    assert authorize(user)
    assert authorize(admin)


def test_authorize_unknown_role_claim():
    broken = Principal(user_id="1", email="a@x.io", name="A", role_claim="ROLE_SUPERUSER")
    with pytest.raises(RoleMappingError):
        authorize(broken, Role.ADMIN)


# HTTP

def test_register_and_login_endpoints(client, db):
    resp = client.post("/api/auth/register", json={"name": "Bob", "email": "bob@example.com", "password": "hunter22"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["role"] == "ROLE_USER"
    assert body["token"]

    resp = client.post("/api/auth/login", json={"email": "bob@example.com", "password": "hunter22"})
    assert resp.status_code == 200
    assert resp.json()["id"] == body["id"]


def test_register_ignores_supplied_role(client, db):
    resp = client.post("/api/auth/register", json={
        "name": "Mallory", "email": "mallory@example.com", "password": "hunter22", "role": "ADMIN",
    })
    assert resp.status_code == 200
    assert resp.json()["role"] == "ROLE_USER"
    assert db["users"].find_one({"email": "mallory@example.com"})["role"] == "user"


def test_register_duplicate_returns_400(client, db):
    make_user(db, email="bob@example.com")
    resp = client.post("/api/auth/register", json={"name": "Bob", "email": "Bob@example.com", "password": "hunter22"})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "message": "Email already exists"}


def test_login_bad_credentials_returns_401(client, db):
    make_user(db)
    resp = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "nope"})
    assert resp.status_code == 401
    assert resp.json()["success"] is False


def test_change_password_endpoint(client, db):
    make_user(db)
    headers = bearer("alice@example.com")
    resp = client.post("/api/auth/change-password", headers=headers,
                       json={"current_password": "wrong", "new_password": "newsecret"})
    assert resp.status_code == 400
    resp = client.post("/api/auth/change-password", headers=headers,
                       json={"current_password": "secret123", "new_password": "newsecret"})
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Password changed successfully"}


def test_protected_route_requires_token(client, db):
    assert client.get("/api/user/cart").status_code == 401
    resp = client.get("/api/user/cart", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["success"] is False


def test_admin_route_rejects_user(client, db):
    make_user(db)
    resp = client.get("/api/admin/orders", headers=bearer("alice@example.com"))
    assert resp.status_code == 403


def test_admin_route_accepts_admin(client, db):
    make_user(db, email="admin@example.com", role=Role.ADMIN)
    resp = client.get("/api/admin/orders", headers=bearer("admin@example.com", Role.ADMIN))
    assert resp.status_code == 200
    assert resp.json() == []


def test_unknown_role_claim_gets_distinct_403(client, db):
    make_user(db)
    token = jwt.encode({"sub": "alice@example.com", "role": "ROLE_SUPERUSER"}, JWT_SECRET, algorithm=JWT_ALG)
    resp = client.get("/api/user/cart", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 403
    assert "contact administrator" in resp.json()["message"]

    plain = client.get("/api/admin/orders", headers=bearer("alice@example.com"))
    assert plain.json()["message"] != resp.json()["message"]


def test_login_rate_limit(client, db, monkeypatch):
    make_user(db)
    monkeypatch.setattr(login_rate_limiter, "max_attempts", 2)
    for _ in range(2):
        client.post("/api/auth/login", json={"email": "alice@example.com", "password": "nope"})
    resp = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret123"})
    assert resp.status_code == 429


def test_profile(client, db):
    make_user(db)
    headers = bearer("alice@example.com")
    resp = client.get("/api/user/profile", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["role"] == "user"
    resp = client.put("/api/user/profile", headers=headers, json={"name": "Alice B."})
    assert resp.json()["name"] == "Alice B."


def test_admin_lists_users_without_hashes(client, db):
    make_user(db)
    make_user(db, email="admin@example.com", role=Role.ADMIN, name="Admin")
    resp = client.get("/api/admin/users", headers=bearer("admin@example.com", Role.ADMIN))
    assert resp.status_code == 200
    users = resp.json()
    assert {u["email"] for u in users} == {"alice@example.com", "admin@example.com"}
    assert all("password_hash" not in u for u in users)


def test_rate_limiter_forgets_idle_clients():
    clock = {"now": 1000.0}
    limiter = auth.LoginRateLimiter(max_attempts=2, window_sec=60, clock=lambda: clock["now"])
    limiter.check("10.0.0.1")
    limiter.check("10.0.0.2")
    assert set(limiter._attempts) == {"10.0.0.1", "10.0.0.2"}

    clock["now"] += 61
    limiter.check("10.0.0.3")
    assert set(limiter._attempts) == {"10.0.0.3"}
