"""Test cases for API endpoints"""
import pytest

from keyhub.core.config import Settings
from keyhub.models.domain import KeyType


async def _login(client, api_key):
    response = await client.post("/api/admin/auth/validate", json={"apiKey": api_key.key_value})
    assert response.status_code == 200
    return response.json()


# ==================== HEALTH ====================

@pytest.mark.asyncio
async def test_root_endpoint(client):
    """Test root endpoint"""
    response = await client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert "message" in data
    assert "KeyHub" in data["message"]


@pytest.mark.asyncio
async def test_health_check(client):
    """Test health check endpoint"""
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] is True
    assert "version" in data
    assert response.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.asyncio
async def test_docs_endpoint(client):
    """Test API documentation endpoint"""
    response = await client.get("/docs")
    assert response.status_code == 200


# ==================== AUTH ====================

@pytest.mark.asyncio
async def test_login_returns_camel_case_session(client, admin_key):
    """Test login returns camel case session"""
    response = await client.post("/api/admin/auth/validate", json={"apiKey": admin_key.key_value})
    assert response.status_code == 200
    data = response.json()
    assert data["valid"] is True
    assert data["token"]
    assert data["refreshToken"]
    assert data["expiresIn"] == 3600
    assert data["apiKey"] == {"uid": admin_key.uid, "name": admin_key.name, "type": "admin"}
    assert response.headers["X-RateLimit-Limit"] == "5"
    assert response.headers["X-RateLimit-Remaining"] == "4"


@pytest.mark.asyncio
async def test_login_errors(client, make_key):
    """Test login errors"""
    missing = await client.post("/api/admin/auth/validate", json={})
    assert missing.status_code == 401
    assert missing.json()["code"] == "MISSING_API_KEY"

    unknown = await client.post("/api/admin/auth/validate", json={"apiKey": "KH-nope"})
    assert unknown.status_code == 401
    assert unknown.json()["code"] == "INVALID_API_KEY"
    assert unknown.headers["WWW-Authenticate"] == "Bearer"

    normal = await make_key("Client", KeyType.NORMAL)
    forbidden = await client.post("/api/admin/auth/validate", json={"apiKey": normal.key_value})
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "NOT_ADMIN_KEY"


@pytest.mark.asyncio
async def test_login_rate_limit(client):
    """Test login rate limit"""
    for _ in range(5):
        response = await client.post("/api/admin/auth/validate", json={"apiKey": "KH-wrongwrong"})
        assert response.status_code == 401

    blocked = await client.post("/api/admin/auth/validate", json={"apiKey": "KH-wrongwrong"})
    assert blocked.status_code == 429
    assert blocked.json()["code"] == "RATE_LIMIT_EXCEEDED"
    assert int(blocked.headers["Retry-After"]) > 0


@pytest.mark.asyncio
async def test_me_and_logout(client, admin_key, bearer):
    """Test me and logout"""
    session = await _login(client, admin_key)
    headers = bearer(session["token"])

    me = await client.get("/api/admin/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["apiKey"]["uid"] == admin_key.uid
    assert me.json()["subscription"]["state"] == "no_subscription"
    assert me.json()["subscription"]["isValid"] is True

    logout = await client.delete("/api/admin/auth/logout", headers=headers)
    assert logout.status_code == 200
    again = await client.delete("/api/admin/auth/logout", headers=headers)
    assert again.status_code == 200

    revoked = await client.get("/api/admin/auth/me", headers=headers)
    assert revoked.status_code == 401
    assert revoked.json()["code"] == "TOKEN_REVOKED"


@pytest.mark.asyncio
async def test_me_requires_token(client):
    """Test me requires token"""
    response = await client.get("/api/admin/auth/me")
    assert response.status_code == 401
    assert response.json()["code"] == "MISSING_TOKEN"

    garbage = await client.get("/api/admin/auth/me", headers={"Authorization": "Bearer garbage"})
    assert garbage.status_code == 401
    assert garbage.json()["code"] == "TOKEN_MALFORMED"


@pytest.mark.asyncio
async def test_refresh_flow(client, admin_key, bearer):
    """Test refresh flow"""
    session = await _login(client, admin_key)

    wrong_type = await client.get("/api/admin/auth/me", headers=bearer(session["refreshToken"]))
    assert wrong_type.status_code == 403
    assert wrong_type.json()["code"] == "INSUFFICIENT_PERMISSIONS"

    rotated = await client.get("/api/admin/auth/refresh", headers=bearer(session["refreshToken"]))
    assert rotated.status_code == 200
    assert rotated.json()["refreshToken"] != session["refreshToken"]

    reused = await client.get("/api/admin/auth/refresh", headers=bearer(session["refreshToken"]))
    assert reused.status_code == 401
    assert reused.json()["code"] == "TOKEN_REVOKED"

    with_access = await client.get("/api/admin/auth/refresh", headers=bearer(rotated.json()["token"]))
    assert with_access.status_code == 401
    assert with_access.json()["code"] == "INVALID_REFRESH_TOKEN"


# ==================== KEYS ====================

@pytest.mark.asyncio
async def test_key_management_flow(client, admin_key, bearer):
    """Test key management flow"""
    headers = bearer((await _login(client, admin_key))["token"])

    created = await client.post("/api/admin/keys", headers=headers, json={
        "name": "Partner",
        "type": "normal",
        "rateLimit": 2,
        "subscription": {"price": 99.9, "durationDays": 30, "autoRenew": True},
    })
    assert created.status_code == 200
    key = created.json()["apiKey"]
    assert key["keyValue"].startswith("KH-")
    assert key["subscription"]["status"] == "active"
    assert key["subscription"]["endDate"] == "2024-01-31T00:00:00"
    assert created.headers["X-RateLimit-Limit"] == "500"
    uid = key["uid"]

    listing = await client.get("/api/admin/keys", headers=headers, params={"type": "normal"})
    assert listing.status_code == 200
    assert listing.json()["pagination"]["total"] == 1
    assert listing.json()["apiKeys"][0]["subscription"]["paymentHistory"][0]["amount"] == 99.9

    duplicate = await client.post(f"/api/admin/keys/{uid}/subscription/activate", headers=headers, json={})
    assert duplicate.status_code == 400
    assert duplicate.json()["code"] == "SUBSCRIPTION_EXISTS"

    renewed = await client.post(
        f"/api/admin/keys/{uid}/subscription/renew",
        headers=headers,
        json={"durationDays": 30, "paymentReference": "PIX-42"},
    )
    assert renewed.status_code == 200
    assert renewed.json()["subscription"]["endDate"] == "2024-03-01T00:00:00"

    cancelled = await client.post(f"/api/admin/keys/{uid}/subscription/cancel", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["subscription"]["status"] == "cancelled"
    assert cancelled.json()["subscription"]["autoRenew"] is False
    assert cancelled.json()["subscription"]["endDate"] == "2024-03-01T00:00:00"

    updated = await client.put(f"/api/admin/keys/{uid}", headers=headers, json={"name": "Partner v2"})
    assert updated.json()["apiKey"]["name"] == "Partner v2"

    detail = await client.get(f"/api/admin/keys/{uid}", headers=headers)
    assert detail.status_code == 200
    assert {p["reference"] for p in detail.json()["apiKey"]["subscription"]["paymentHistory"]} >= {"PIX-42"}
    assert detail.json()["apiKey"]["auditLogs"]

    deleted = await client.delete(f"/api/admin/keys/{uid}", headers=headers)
    assert deleted.status_code == 200
    gone = await client.get(f"/api/admin/keys/{uid}", headers=headers)
    assert gone.status_code == 404
    assert gone.json()["code"] == "API_KEY_NOT_FOUND"


@pytest.mark.asyncio
async def test_key_routes_require_admin_session(client, make_key):
    """Test key routes require admin session"""
    response = await client.get("/api/admin/keys")
    assert response.status_code == 401

    normal = await make_key("Client", KeyType.NORMAL)
    forbidden = await client.post("/api/admin/auth/validate", json={"apiKey": normal.key_value})
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_create_key_validation(client, admin_key, bearer):
    """Test create key validation"""
    headers = bearer((await _login(client, admin_key))["token"])
    response = await client.post("/api/admin/keys", headers=headers, json={"name": "   "})
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"

    bad_type = await client.post("/api/admin/keys", headers=headers, json={"name": "x", "type": "root"})
    assert bad_type.status_code == 422


@pytest.mark.asyncio
async def test_revoke_sessions_endpoint(client, admin_key, bearer):
    """Test revoke sessions endpoint"""
    headers = bearer((await _login(client, admin_key))["token"])
    response = await client.post(f"/api/admin/keys/{admin_key.uid}/sessions/revoke", headers=headers)
    assert response.status_code == 200
    assert response.json()["apiKey"]["tokenVersion"] == 1

    stale = await client.get("/api/admin/auth/me", headers=headers)
    assert stale.status_code == 401
    assert stale.json()["code"] == "TOKEN_REVOKED"


@pytest.mark.asyncio
async def test_expired_admin_is_locked_out(client, services, admin_key, bearer, clock):
    """Test expired admin is locked out"""
    await services.lifecycle.activate(admin_key.uid, price=50, duration_days=30)
    clock.advance(days=30, seconds=1)
    fresh = services.sessions.issue_access_token(admin_key)[0]
    response = await client.get("/api/admin/auth/me", headers=bearer(fresh))
    assert response.status_code == 403
    assert response.json()["code"] == "SUBSCRIPTION_EXPIRED"
    assert (await services.gateway.get_subscription(admin_key.uid)).status == "expired"


# ==================== REPORTS ====================

@pytest.mark.asyncio
async def test_stats_and_reports(client, services, admin_key, bearer):
    """Test stats and reports"""
    headers = bearer((await _login(client, admin_key))["token"])
    await services.admin.create_key("Client", subscription=None)

    stats = await client.get("/api/admin/stats", headers=headers)
    assert stats.status_code == 200
    assert stats.json()["overview"]["totalKeys"] == 2
    assert stats.json()["topKeys"][0]["usageCount"] == 1

    expiring = await client.get("/api/admin/subscriptions/expiring", headers=headers, params={"days": 30})
    assert expiring.status_code == 200
    assert expiring.json()["summary"]["total"] == 0

    invalid = await client.get("/api/admin/subscriptions/expiring", headers=headers, params={"status": "soon"})
    assert invalid.status_code == 422

    revenue = await client.get(
        "/api/admin/subscriptions/revenue", headers=headers, params={"groupBy": "month"}
    )
    assert revenue.status_code == 200
    assert revenue.json()["summary"]["totalRevenue"] == 0


# ==================== MAINTENANCE ====================

@pytest.mark.asyncio
async def test_cron_maintenance_open_without_secret(client):
    """Test cron maintenance open without secret"""
    response = await client.post("/api/cron/maintenance")
    assert response.status_code == 200
    assert response.json()["report"]["expiredCount"] == 0


@pytest.mark.asyncio
async def test_cron_maintenance_requires_secret(client, services, bearer):
    """Test cron maintenance requires secret"""
    services.settings = Settings(JWT_SECRET_KEY="test-secret-key", CRON_SECRET="cron-s3cret")

    denied = await client.post("/api/cron/maintenance", headers=bearer("wrong"))
    assert denied.status_code == 401
    missing = await client.post("/api/cron/maintenance")
    assert missing.status_code == 401

    allowed = await client.post("/api/cron/maintenance", headers=bearer("cron-s3cret"))
    assert allowed.status_code == 200


# ==================== VERIFY ====================

@pytest.mark.asyncio
async def test_verify_reports_subscription_headers(client, services, make_key):
    """Test verify reports subscription headers"""
    key = await make_key("Client", KeyType.NORMAL)
    await services.lifecycle.activate(key.uid, price=10, duration_days=5, auto_renew=True)

    response = await client.post("/api/v1/verify", headers={"X-API-Key": key.key_value})
    assert response.status_code == 200
    assert response.headers["X-API-Key-Type"] == "normal"
    assert response.headers["X-Subscription-Status"] == "expiring"
    assert response.headers["X-Days-Remaining"] == "5"
    assert response.headers["X-Renewal-Date"] == "2024-01-06T00:00:00"
    assert response.json()["subscription"]["isValid"] is True
    assert (await services.gateway.get_api_key(key.uid)).usage_count == 1


@pytest.mark.asyncio
async def test_verify_rejections(client, make_key):
    """Test verify rejections"""
    missing = await client.post("/api/v1/verify")
    assert missing.status_code == 401
    assert missing.json()["code"] == "MISSING_API_KEY"

    inactive = await make_key("Off", KeyType.NORMAL, is_active=False)
    response = await client.post("/api/v1/verify", headers={"X-API-Key": inactive.key_value})
    assert response.status_code == 403
    assert response.json()["code"] == "INACTIVE_API_KEY"


@pytest.mark.asyncio
async def test_verify_uses_per_key_rate_limit(client, services, make_key):
    """Test verify uses per key rate limit"""
    key = await make_key("Limited", KeyType.NORMAL)
    await services.gateway.put_api_key(key.uid, {"rate_limit": 1, "rate_limit_window": 60})

    first = await client.post("/api/v1/verify", headers={"X-API-Key": key.key_value})
    assert first.status_code == 200
    second = await client.post("/api/v1/verify", headers={"X-API-Key": key.key_value})
    assert second.status_code == 429
    assert (await services.gateway.get_api_key(key.uid)).usage_count == 1
