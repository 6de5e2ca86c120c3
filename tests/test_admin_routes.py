"""Integration tests for the X-Admin-Token key management and unlock endpoints."""

import pytest
from fastapi.testclient import TestClient

from authguard.app import app
from authguard.service.runtime import get_runtime

ADMIN = {"X-Admin-Token": "test-admin-token"}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def signing_key_id(client):
    key = client.portal.call(get_runtime().keys.get_signing_key)
    return key.id


class TestAdminToken:
    """Tests for the admin token gate."""

    def test_missing_token(self, client):
        resp = client.get("/admin/jwt/keys")

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_wrong_token(self, client):
        resp = client.get("/admin/jwt/keys", headers={"X-Admin-Token": "guess"})

        assert resp.status_code == 401

    def test_unset_admin_token_disables_routes(self, client):
        get_runtime().settings.admin_api_token = None

        resp = client.get("/admin/jwt/keys", headers=ADMIN)

        assert resp.status_code == 401


class TestKeyManagement:
    """Tests for listing, rotating and revoking signing keys."""

    def test_list_keys_hides_secrets(self, client, signing_key_id):
        resp = client.get("/admin/jwt/keys", headers=ADMIN)

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        data = body["data"]
        assert data["currentSigningKeyId"] == signing_key_id
        assert data["totalKeys"] == 1
        assert data["activeKeys"] == 1
        key = data["keys"][0]
        assert "secret" not in key
        assert "..." in key["secretPreview"]
        assert key["status"] == "active"

    def test_rotate_not_due(self, client, signing_key_id):
        resp = client.post("/admin/jwt/keys/rotate", headers=ADMIN, json={})

        data = resp.json()["data"]
        assert resp.status_code == 200
        assert data["rotated"] is False
        assert data["reason"] == "not_due"
        assert data["currentKeyId"] == signing_key_id
        assert data["currentKeyAge"] == 0

    def test_forced_rotation(self, client, signing_key_id):
        resp = client.post("/admin/jwt/keys/rotate", headers=ADMIN, json={"force": True})

        data = resp.json()["data"]
        assert resp.json()["message"] == "JWT keys rotated successfully"
        assert data["rotated"] is True
        assert data["newKeyId"] != signing_key_id
        listing = client.get("/admin/jwt/keys", headers=ADMIN).json()["data"]
        statuses = {k["id"]: k["status"] for k in listing["keys"]}
        assert statuses == {signing_key_id: "rotating", data["newKeyId"]: "active"}

    def test_revoke_active_key_rejected(self, client, signing_key_id):
        resp = client.post("/admin/jwt/keys/revoke", headers=ADMIN, json={"keyId": signing_key_id})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invariant_violation"

    def test_revoke_unknown_key(self, client, signing_key_id):
        resp = client.post("/admin/jwt/keys/revoke", headers=ADMIN, json={"keyId": "jwt-key-nope"})

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_revoke_rotating_key(self, client, signing_key_id):
        client.post("/admin/jwt/keys/rotate", headers=ADMIN, json={"force": True})

        resp = client.post("/admin/jwt/keys/revoke", headers=ADMIN, json={"keyId": signing_key_id})

        assert resp.status_code == 200
        assert resp.json()["data"] == {"keyId": signing_key_id}
        listing = client.get("/admin/jwt/keys", headers=ADMIN).json()["data"]
        assert listing["activeKeys"] == 1
        assert {k["id"]: k["status"] for k in listing["keys"]}[signing_key_id] == "revoked"


class TestAdminUnlock:
    def test_unlocks_account(self, client):
        runtime = get_runtime()
        runtime.auth.signup("locked@example.com", "pw-locked")
        client.portal.call(runtime.lockout.lock_account, "locked@example.com")

        resp = client.post("/admin/accounts/unlock", headers=ADMIN, json={"email": "locked@example.com"})

        assert resp.status_code == 200
        assert runtime.store.get_user_by_email("locked@example.com").account_locked is False

    def test_unknown_account(self, client):
        resp = client.post("/admin/accounts/unlock", headers=ADMIN, json={"email": "ghost@example.com"})

        assert resp.status_code == 404
