"""
Tests for the credential & session lifecycle (SessionManager) and the /auth routes.
"""

import threading

import jwt
import pytest
from sqlalchemy import select

from dasheet_manager.auth import SessionManager
from dasheet_manager.errors import DuplicateIdentity, InvalidCredentials, InvalidRefreshToken
from dasheet_manager.extensions import db
from dasheet_manager.models import AuditLog, RefreshToken, User

from conftest import PASSWORD


@pytest.fixture
def manager(app, session):
    return SessionManager(session, app.config)


def _active_tokens(session, user_id):
    return session.scalars(
        select(RefreshToken).where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
    ).all()


class TestRegister:
    def test_password_is_hashed(self, manager, session):
        user = manager.register("U001", "U001@Example.com", PASSWORD)
        stored = session.get(User, user.id)
        assert stored.password_hash != PASSWORD
        assert PASSWORD not in stored.password_hash
        assert stored.email == "u001@example.com"
        assert stored.role == "user"

    def test_duplicate_code_or_email(self, manager):
        manager.register("U001", "one@example.com", PASSWORD)
        with pytest.raises(DuplicateIdentity):
            manager.register("U001", "two@example.com", PASSWORD)
        with pytest.raises(DuplicateIdentity):
            manager.register("U002", "ONE@example.com", PASSWORD)

    def test_register_by_admin_is_audited(self, manager, session, users):
        user = manager.register("U003", "three@example.com", PASSWORD, actor_id=users["admin"])
        entry = session.scalar(select(AuditLog).where(AuditLog.entity_id == user.id))
        assert (entry.action, entry.entity_type, entry.user_id) == ("CREATE", "user", users["admin"])


class TestLogin:
    def test_success_issues_pair_and_stores_only_hash(self, manager, session, users, app):
        pair = manager.login("ALICE01", PASSWORD)

        claims = jwt.decode(pair.access_token, app.config["JWT_SECRET_KEY"], algorithms=["HS256"])
        assert claims["sub"] == users["alice"]
        assert claims["code"] == "ALICE01"
        assert claims["role"] == "user"
        assert claims["type"] == "access"

        records = _active_tokens(session, users["alice"])
        assert len(records) == 1
        assert records[0].token_hash != pair.refresh_token

        entry = session.scalar(select(AuditLog).where(AuditLog.action == "LOGIN"))
        assert entry.user_id == users["alice"]

    def test_unknown_code_and_wrong_password_are_indistinguishable(self, manager, users):
        with pytest.raises(InvalidCredentials) as unknown:
            manager.login("NOBODY", PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            manager.login("ALICE01", "Wrong-passw0rd")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    def test_tokens_issued_together_differ(self, manager, users):
        first = manager.login("ALICE01", PASSWORD)
        second = manager.login("ALICE01", PASSWORD)
        assert first.refresh_token != second.refresh_token
        assert first.access_token != second.access_token


class TestRefresh:
    def test_rotation_revokes_old_and_issues_new(self, manager, session, users):
        pair = manager.login("ALICE01", PASSWORD)
        rotated = manager.refresh(pair.refresh_token)

        assert rotated.refresh_token != pair.refresh_token
        assert len(_active_tokens(session, users["alice"])) == 1
        # The new token works once more.
        manager.refresh(rotated.refresh_token)

    def test_double_redemption_fails_second_time(self, manager, users):
        pair = manager.login("ALICE01", PASSWORD)
        manager.refresh(pair.refresh_token)
        with pytest.raises(InvalidRefreshToken):
            manager.refresh(pair.refresh_token)

    def test_concurrent_redemption_rotates_once(self, app, manager, session, users):
        token = manager.login("ALICE01", PASSWORD).refresh_token
        workers = 4
        barrier = threading.Barrier(workers)
        outcomes = []

        def redeem():
            with app.app_context():
                barrier.wait()
                try:
                    SessionManager(db.session, app.config).refresh(token)
                    outcomes.append("rotated")
                except InvalidRefreshToken:
                    outcomes.append("rejected")
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=redeem) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["rejected"] * (workers - 1) + ["rotated"]
        assert len(_active_tokens(session, users["alice"])) == 1

    def test_access_token_is_not_a_refresh_token(self, manager, users):
        pair = manager.login("ALICE01", PASSWORD)
        with pytest.raises(InvalidRefreshToken):
            manager.refresh(pair.access_token)

    @pytest.mark.parametrize("raw", [None, "", "not-a-jwt"])
    def test_garbage_is_rejected(self, manager, raw):
        with pytest.raises(InvalidRefreshToken):
            manager.refresh(raw)

    def test_expired_token_is_rejected(self, app, session, users):
        app.config["REFRESH_TOKEN_TTL_DAYS"] = -1
        pair = SessionManager(session, app.config).login("ALICE01", PASSWORD)
        with pytest.raises(InvalidRefreshToken) as exc:
            SessionManager(session, app.config).refresh(pair.refresh_token)
        assert exc.value.message == "Invalid refresh token"

    def test_reuse_revokes_all_sessions_when_enabled(self, app, session, users):
        app.config["REVOKE_SESSIONS_ON_REFRESH_REUSE"] = True
        manager = SessionManager(session, app.config)
        stolen = manager.login("ALICE01", PASSWORD)
        manager.login("ALICE01", PASSWORD)
        manager.refresh(stolen.refresh_token)

        with pytest.raises(InvalidRefreshToken):
            manager.refresh(stolen.refresh_token)
        assert _active_tokens(session, users["alice"]) == []


class TestLogoutAndAuthenticate:
    def test_logout_revokes_every_session(self, manager, session, users):
        first = manager.login("ALICE01", PASSWORD)
        manager.login("ALICE01", PASSWORD)

        assert manager.logout(users["alice"]) == 2
        assert _active_tokens(session, users["alice"]) == []
        with pytest.raises(InvalidRefreshToken):
            manager.refresh(first.refresh_token)

    def test_authenticate(self, manager, users):
        pair = manager.login("BOB01", PASSWORD)
        assert manager.authenticate(pair.access_token).id == users["bob"]
        assert manager.authenticate(pair.refresh_token) is None
        assert manager.authenticate("junk") is None


class TestAuthRoutes:
    def _cookie(self, client, app):
        cookie = client.get_cookie(app.config["REFRESH_COOKIE_NAME"], path=app.config["REFRESH_COOKIE_PATH"])
        return cookie.value if cookie else None

    def test_login_sets_http_only_refresh_cookie(self, client, users):
        response = client.post("/auth/login", json={"code": "ALICE01", "password": PASSWORD})
        assert response.status_code == 200
        body = response.get_json()
        assert body["token_type"] == "Bearer"
        assert body["user"]["code"] == "ALICE01"
        assert "refresh_token" not in body

        header = response.headers["Set-Cookie"]
        assert header.startswith("refresh_token=")
        assert "HttpOnly" in header
        assert "Path=/auth/refresh" in header
        assert "SameSite=Strict" in header

    def test_login_failures_look_the_same(self, client, users):
        unknown = client.post("/auth/login", json={"code": "NOBODY", "password": PASSWORD})
        wrong = client.post("/auth/login", json={"code": "ALICE01", "password": "Wrong-passw0rd"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.get_json() == wrong.get_json() == {"error": "Invalid credentials"}

    def test_refresh_rotates_cookie(self, client, app, login):
        login("alice")
        before = self._cookie(client, app)

        response = client.post("/auth/refresh")
        assert response.status_code == 200
        assert response.get_json()["access_token"]
        after = self._cookie(client, app)
        assert after and after != before

        # The old cookie value is spent.
        client.set_cookie(app.config["REFRESH_COOKIE_NAME"], before, path=app.config["REFRESH_COOKIE_PATH"])
        replay = client.post("/auth/refresh")
        assert replay.status_code == 401
        assert replay.get_json() == {"error": "Invalid refresh token"}

    def test_refresh_without_cookie(self, client):
        response = client.post("/auth/refresh")
        assert response.status_code == 401

    def test_logout_clears_cookie_and_me(self, client, app, login):
        token = login("alice")
        headers = {"Authorization": f"Bearer {token}"}

        me = client.get("/auth/me", headers=headers)
        assert me.get_json()["user"]["email"] == "alice@example.com"

        response = client.post("/auth/logout", headers=headers)
        assert response.status_code == 200
        assert self._cookie(client, app) is None
        assert client.post("/auth/refresh").status_code == 401

    def test_me_requires_token(self, client):
        assert client.get("/auth/me").status_code == 401
        assert client.get("/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401

    def test_register_is_admin_only(self, client, auth_headers):
        body = {"code": "NEW01", "email": "new@example.com", "password": "Str0ng!pass"}
        assert client.post("/auth/register", json=body, headers=auth_headers("alice")).status_code == 403

        created = client.post("/auth/register", json=body, headers=auth_headers("admin"))
        assert created.status_code == 201
        assert created.get_json()["user"]["code"] == "NEW01"

        again = client.post("/auth/register", json=body, headers=auth_headers("admin"))
        assert again.status_code == 409

    def test_register_rejects_weak_password(self, client, auth_headers):
        body = {"code": "NEW02", "email": "weak@example.com", "password": "password"}
        response = client.post("/auth/register", json=body, headers=auth_headers("admin"))
        assert response.status_code == 400
        assert response.get_json()["details"][0]["field"] == "password"