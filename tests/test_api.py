from datetime import timedelta

from database import utcnow


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"message": "CRM Backend running"}


def test_database_diagnostics(client, contacts, user):
    contacts.create(user["id"], {"first_name": "Priya"})

    body = client.get("/test").json()

    assert body["backend"] == "running"
    assert body["database"] == "connected"
    assert body["database_name"] == "crm_test"
    assert "contacts" in body["collections"]


def test_register_login_and_profile(client):
    response = client.post(
        "/api/auth/register",
        json={"name": "Asha Rao", "email": "asha@example.com", "password": "secret123", "role": "admin"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["user"]["role"] == "user"
    assert "password_hash" not in body["data"]["user"]

    response = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "secret123"})
    assert response.status_code == 200
    token = response.json()["data"]["token"]

    response = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["data"]["email"] == "asha@example.com"


def test_login_wrong_password(client, user):
    response = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "nope-nope"})

    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Invalid credentials"}


def test_duplicate_registration(client, user):
    response = client.post(
        "/api/auth/register", json={"name": "Asha", "email": "asha@example.com", "password": "secret123"}
    )

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_schema_errors_are_listed(client):
    response = client.post("/api/auth/register", json={"name": "Asha", "email": "not-an-email"})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    fields = {error["field"] for error in body["errors"]}
    assert {"email", "password"} <= fields


def test_missing_and_invalid_token(client):
    missing = client.get("/api/contacts")
    invalid = client.get("/api/contacts", headers={"Authorization": "Bearer garbage"})

    assert missing.status_code == 401
    assert missing.json()["success"] is False
    assert invalid.status_code == 401


def test_disabled_account_gets_403(client, users, user, auth_headers):
    users.update_user(user["id"], {"is_active": False})

    response = client.get("/api/auth/profile", headers=auth_headers)

    assert response.status_code == 403


def test_admin_routes(client, auth_headers, admin_headers, admin, user):
    assert client.get("/api/auth/users", headers=auth_headers).status_code == 403

    response = client.get("/api/auth/users", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["count"] == 2

    response = client.delete(f"/api/auth/users/{admin['id']}", headers=admin_headers)
    assert response.status_code == 403

    response = client.put(f"/api/auth/users/{user['id']}/toggle-active", headers=admin_headers)
    assert response.json()["data"]["is_active"] is False

    stats = client.get("/api/auth/stats", headers=admin_headers).json()["data"]
    assert stats["total_admins"] == 1


def test_admin_cannot_demote_self_over_http(client, admin_headers, admin):
    response = client.put(f"/api/auth/users/{admin['id']}", json={"role": "user"}, headers=admin_headers)

    assert response.status_code == 403
    assert response.json() == {"success": False, "message": "You cannot change your own role"}


def test_check_admin(client, auth_headers):
    response = client.get("/api/auth/check-admin", headers=auth_headers)

    assert response.json()["data"]["is_admin"] is False


def test_address_routes(client, auth_headers):
    first = client.post("/api/auth/addresses", json={"city": "Pune"}, headers=auth_headers).json()["data"][0]
    second = client.post("/api/auth/addresses", json={"city": "Goa"}, headers=auth_headers).json()["data"][1]

    response = client.put(f"/api/auth/addresses/{second['id']}/set-default", headers=auth_headers)
    assert [a["is_default"] for a in response.json()["data"]] == [False, True]

    response = client.delete(f"/api/auth/addresses/{second['id']}", headers=auth_headers)
    assert response.json()["data"][0]["id"] == first["id"]
    assert response.json()["data"][0]["is_default"] is True

    response = client.delete(f"/api/auth/addresses/{first['id']}", headers=auth_headers)
    assert response.status_code == 400
    assert "last address" in response.json()["message"]


def test_contact_flow(client, auth_headers, other_headers):
    response = client.post(
        "/api/contacts", json={"first_name": "Priya", "email": "p@example.com", "tags": ["vip"]}, headers=auth_headers
    )
    assert response.status_code == 201
    contact_id = response.json()["data"]["id"]

    duplicate = client.post("/api/contacts", json={"first_name": "Copy", "email": "P@example.com"}, headers=auth_headers)
    assert duplicate.status_code == 400

    listing = client.get("/api/contacts", params={"limit": 500}, headers=auth_headers).json()
    assert listing["pagination"]["limit"] == 100
    assert listing["count"] == 1

    assert client.get("/api/contacts/tags", headers=auth_headers).json()["data"] == ["vip"]
    assert client.get(f"/api/contacts/{contact_id}", headers=other_headers).status_code == 404

    favorite = client.patch(f"/api/contacts/{contact_id}/favorite", headers=auth_headers)
    assert favorite.json()["data"]["is_favorite"] is True

    assert client.delete(f"/api/contacts/{contact_id}", headers=auth_headers).status_code == 200
    assert client.get(f"/api/contacts/{contact_id}", headers=auth_headers).status_code == 404


def test_contact_batch(client, auth_headers):
    response = client.post(
        "/api/contacts/batch",
        json={"contacts": [{"first_name": "Priya"}, {"first_name": "X"}]},
        headers=auth_headers,
    )

    summary = response.json()["data"]["summary"]
    assert summary == {"total_processed": 2, "successful": 1, "failed": 1}


def test_lead_flow(client, auth_headers, other_headers, db):
    payload = {"first_name": "Nina", "email": "nina@example.com", "priority": "high"}
    created = client.post("/api/leads", json=payload, headers=auth_headers)
    assert created.status_code == 201
    lead_id = created.json()["data"]["id"]

    duplicate = client.post("/api/leads", json=payload, headers=other_headers)
    assert duplicate.status_code == 400
    assert db["leads"].count_documents({}) == 1

    status = client.patch(
        f"/api/leads/{lead_id}/status", json={"status": "qualified", "note": "Has budget"}, headers=auth_headers
    )
    assert status.json()["data"]["notes"][0]["content"] == "Status changed to qualified: Has budget"

    bulk = client.put(
        "/api/leads/bulk-update",
        json={"lead_ids": [lead_id], "update_fields": {"priority": "urgent"}},
        headers=auth_headers,
    )
    assert bulk.json()["data"] == {"matched": 1, "modified": 1}

    listing = client.get("/api/leads", headers=other_headers).json()
    assert listing["pagination"]["total_items"] == 1
    assert listing["stats"] == {"qualified": 1}

    stats = client.get("/api/leads/summary/stats", headers=auth_headers).json()["data"]
    assert stats["conversion_rate"] == "0.00"

    assert client.get("/api/leads/not-an-id", headers=auth_headers).status_code == 400


def test_task_flow(client, auth_headers):
    past = (utcnow() - timedelta(days=2)).isoformat()
    rejected = client.post("/api/tasks", json={"title": "Too late", "due_date": past}, headers=auth_headers)
    assert rejected.status_code == 400

    due = (utcnow().replace(hour=23, minute=59, second=0, microsecond=0)).isoformat()
    created = client.post("/api/tasks", json={"title": "Call Nina", "due_date": due}, headers=auth_headers)
    assert created.status_code == 201
    task_id = created.json()["data"]["id"]

    today = client.get("/api/tasks/analytics/today", headers=auth_headers).json()
    assert today["count"] == 1

    bulk = client.patch(
        "/api/tasks/bulk-status", json={"task_ids": [task_id], "status": "completed"}, headers=auth_headers
    )
    assert bulk.json()["data"]["modified_count"] == 1

    today = client.get("/api/tasks/analytics/today", headers=auth_headers).json()
    assert today["count"] == 0


def test_activity_and_dashboard(client, auth_headers):
    response = client.post("/api/activities", json={"type": "call", "title": "Intro call"}, headers=auth_headers)
    assert response.status_code == 201

    summary = client.get("/api/dashboard/summary", headers=auth_headers).json()["data"]
    assert len(summary["recent_activities"]) == 1
    assert summary["summary"]["conversion_rate"] == 0

    short = client.get("/api/dashboard/search", params={"q": "a"}, headers=auth_headers)
    assert short.status_code == 400
    assert short.json()["message"] == "Search query must be at least 2 characters long"

    bad_period = client.get("/api/dashboard/metrics", params={"period": "decade"}, headers=auth_headers)
    assert bad_period.status_code == 400


def test_unknown_route_uses_envelope(client):
    response = client.get("/api/nothing-here")

    assert response.status_code == 404
    assert response.json()["success"] is False
