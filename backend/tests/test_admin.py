"""Tests for admin login, the cookie session and audit endpoints (/api/admin/*)."""

from __future__ import annotations

from sqlalchemy import text
from sqlmodel import Session, select

from carelink.dependencies import ADMIN_COOKIE
from carelink.models.audit import AuditAction, AuditLogEntry

from conftest import ADMIN_PASSWORD


def _actions(session: Session) -> list[str]:
    return [e.action for e in session.exec(select(AuditLogEntry).order_by(AuditLogEntry.seq)).all()]


# ── Login ────────────────────────────────────────────────────────────


class TestLogin:
    def test_login_sets_cookie(self, client, session: Session):
        resp = client.post("/api/admin/auth/login", json={"password": ADMIN_PASSWORD})
        assert resp.status_code == 200
        data = resp.json()
        assert data["authenticated"] is True
        assert data["csrf_token"]
        assert data["expires_at"]

        set_cookie = resp.headers["set-cookie"]
        assert f"{ADMIN_COOKIE}=" in set_cookie
        assert "HttpOnly" in set_cookie
        assert "Path=/api/admin" in set_cookie
        assert "samesite=strict" in set_cookie.lower()
        assert AuditAction.ADMIN_LOGIN_SUCCESS.value in _actions(session)

    def test_wrong_password(self, client, session: Session):
        resp = client.post("/api/admin/auth/login", json={"password": "wrong"})
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "Invalid password", "remaining_attempts": 4}
        assert AuditAction.ADMIN_LOGIN_FAILED.value in _actions(session)

    def test_blocked_after_five_failures(self, client, session: Session):
        for _ in range(4):
            assert client.post("/api/admin/auth/login", json={"password": "wrong"}).status_code == 401
        resp = client.post("/api/admin/auth/login", json={"password": "wrong"})
        assert resp.status_code == 429
        assert 1790 <= int(resp.headers["retry-after"]) <= 1800
        assert resp.json()["blocked_until"]

        # the right password does not help while blocked
        resp = client.post("/api/admin/auth/login", json={"password": ADMIN_PASSWORD})
        assert resp.status_code == 429
        assert AuditAction.ADMIN_LOGIN_BLOCKED.value in _actions(session)

    def test_blocks_are_per_client(self, client):
        for _ in range(5):
            client.post("/api/admin/auth/login", json={"password": "wrong"})
        resp = client.post(
            "/api/admin/auth/login",
            json={"password": ADMIN_PASSWORD},
            headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1"},
        )
        assert resp.status_code == 200

    def test_success_resets_counter(self, client):
        for _ in range(3):
            client.post("/api/admin/auth/login", json={"password": "wrong"})
        client.post("/api/admin/auth/login", json={"password": ADMIN_PASSWORD})
        resp = client.post("/api/admin/auth/login", json={"password": "wrong"})
        assert resp.json()["remaining_attempts"] == 4

    def test_missing_password_field(self, client):
        resp = client.post("/api/admin/auth/login", json={})
        assert resp.status_code == 400


# ── Session ──────────────────────────────────────────────────────────


class TestSession:
    def test_no_cookie(self, client):
        resp = client.get("/api/admin/auth/session")
        assert resp.status_code == 200
        assert resp.json()["authenticated"] is False

    def test_logged_in(self, admin_client):
        resp = admin_client.get("/api/admin/auth/session")
        data = resp.json()
        assert data["authenticated"] is True
        assert data["csrf_token"] == admin_client.csrf

    def test_forged_cookie(self, client):
        resp = client.get("/api/admin/auth/session", headers={"Cookie": f"{ADMIN_COOKIE}=abc:def"})
        assert resp.json()["authenticated"] is False

    def test_session_bound_to_ip(self, admin_client):
        resp = admin_client.get("/api/admin/audit/logs", headers={"X-Forwarded-For": "198.51.100.7"})
        assert resp.status_code == 401
        # the session is gone for the original client as well
        assert admin_client.get("/api/admin/audit/logs").status_code == 401

    def test_logout_requires_csrf(self, admin_client):
        resp = admin_client.post("/api/admin/auth/logout")
        assert resp.status_code == 403
        assert admin_client.get("/api/admin/auth/session").json()["authenticated"] is True

    def test_logout(self, admin_client, session: Session):
        resp = admin_client.post("/api/admin/auth/logout", headers={"X-CSRF-Token": admin_client.csrf})
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        assert admin_client.get("/api/admin/auth/session").json()["authenticated"] is False
        assert AuditAction.ADMIN_LOGOUT.value in _actions(session)


# ── Audit endpoints ──────────────────────────────────────────────────


class TestAuditEndpoints:
    def test_logs_require_admin(self, client, session: Session):
        resp = client.get("/api/admin/audit/logs")
        assert resp.status_code == 401
        assert AuditAction.ADMIN_API_UNAUTHORIZED.value in _actions(session)

    def test_list_logs(self, admin_client):
        resp = admin_client.get("/api/admin/audit/logs")
        assert resp.status_code == 200
        actions = [e["action"] for e in resp.json()]
        assert AuditAction.ADMIN_LOGIN_SUCCESS.value in actions
        assert all("ip_masked" not in e for e in resp.json())

    def test_filter_by_actor(self, admin_client):
        resp = admin_client.get("/api/admin/audit/logs", params={"actor_id": "admin"})
        assert resp.status_code == 200
        assert {e["actor_id"] for e in resp.json()} == {"admin"}

    def test_limit_bounds(self, admin_client):
        assert admin_client.get("/api/admin/audit/logs", params={"limit": 0}).status_code == 400
        assert admin_client.get("/api/admin/audit/logs", params={"limit": 501}).status_code == 400

    def test_verify_requires_csrf(self, admin_client):
        resp = admin_client.post("/api/admin/audit/verify", headers={"X-CSRF-Token": "forged"})
        assert resp.status_code == 403

    def test_verify_intact_chain(self, admin_client, session: Session):
        resp = admin_client.post("/api/admin/audit/verify", headers={"X-CSRF-Token": admin_client.csrf})
        assert resp.status_code == 200
        data = resp.json()
        assert data["valid"] is True
        assert data["checked"] >= 1
        assert AuditAction.AUDIT_CHAIN_VERIFIED.value in _actions(session)

    def test_verify_detects_tampering(self, admin_client, session: Session):
        first = session.exec(select(AuditLogEntry).order_by(AuditLogEntry.seq)).first()
        session.execute(text("UPDATE audit_logs SET outcome = 'failure' WHERE id = :id"), {"id": first.id})
        session.commit()
        session.expire_all()

        resp = admin_client.post("/api/admin/audit/verify", headers={"X-CSRF-Token": admin_client.csrf})
        data = resp.json()
        assert data["valid"] is False
        assert f"Checksum mismatch at entry {first.id}" in data["errors"]
