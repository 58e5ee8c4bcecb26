from datetime import timedelta

import database


def test_default_settings(client, student_headers):
    body = client.get("/api/settings", headers=student_headers).json()

    assert body["notifications"] == {"sessionReminders": True, "newsUpdates": False}
    assert body["security"]["twoFactorEnabled"] is False
    assert body["security"]["passwordLastModified"] is not None
    assert body["profile"] == {"email": "eleve@email.com", "phone": "", "address": ""}


def test_update_notifications(client, student_headers):
    payload = {"sessionReminders": False, "newsUpdates": True}
    response = client.patch("/api/settings/notifications", json=payload, headers=student_headers)
    assert response.status_code == 200
    assert response.json()["updatedSettings"] == payload

    assert client.get("/api/settings", headers=student_headers).json()["notifications"] == payload
    bad = client.patch("/api/settings/notifications", json={"sessionReminders": "yes", "newsUpdates": True}, headers=student_headers)
    assert bad.status_code == 422


def test_change_password_keeps_current_session_only(client, make_user, login):
    make_user(email="jean@email.com")
    current = login("jean@email.com")
    other_device = login("jean@email.com")

    wrong = client.patch(
        "/api/settings/password", json={"currentPassword": "nope1234", "newPassword": "nouveau123"}, headers=current,
    )
    assert wrong.status_code == 400

    response = client.patch(
        "/api/settings/password", json={"currentPassword": "secret123", "newPassword": "nouveau123"}, headers=current,
    )
    assert response.status_code == 200
    assert client.get("/auth/verify-token", headers=current).status_code == 200
    assert client.get("/auth/verify-token", headers=other_device).status_code == 401
    login("jean@email.com", "nouveau123")


def test_two_factor_toggle(client, mongo, student_headers):
    response = client.patch("/api/settings/two-factor", json={"enabled": True}, headers=student_headers)
    assert response.json()["twoFactorEnabled"] is True
    assert mongo["user"].find_one({"email": "eleve@email.com"})["twoFactorEnabled"] is True


def test_delete_account(client, mongo, make_user, login):
    user_id = make_user(email="jean@email.com")
    headers = login("jean@email.com")
    mongo["session"].insert_one({"studentId": user_id, "courseTitle": "Conduite"})
    mongo["session"].insert_one({"studentId": "someone-else", "courseTitle": "Code"})

    refused = client.request("DELETE", "/api/settings/delete-account", json={"confirmation": "oui"}, headers=headers)
    assert refused.status_code == 400

    response = client.request("DELETE", "/api/settings/delete-account", json={"confirmation": "SUPPRIMER"}, headers=headers)
    assert response.status_code == 200
    assert mongo["user"].find_one({"email": "jean@email.com"}) is None
    assert mongo["session"].count_documents({}) == 1
    assert client.get("/auth/verify-token", headers=headers).status_code == 401


def _populate(make_user):
    now = database.now_utc()
    make_user(email="moniteur@email.com", role="instructeur", nom="Marc Moniteur", createdAt=now - timedelta(days=400))
    make_user(email="eleve@email.com", nom="Jean Dupont", createdAt=now - timedelta(hours=1))
    make_user(email="nina@email.com", nom="Nina Nouvelle", statut="en attente", createdAt=now - timedelta(days=400))


def test_dashboard_stats(client, admin_headers, make_user):
    _populate(make_user)

    stats = client.get("/api/dashboard/stats", headers=admin_headers).json()

    assert stats["moniteursActifs"]["total"] == 1
    assert stats["moniteursActifs"]["trend"] == "stable"
    assert stats["elevesInscrits"]["total"] == 2
    assert stats["elevesInscrits"]["trend"] == "up"
    assert stats["comptesActifs"]["total"] == 3
    assert stats["enAttente"] == {"total": 1, "status": "Needs attention", "priority": "medium"}


def test_recent_accounts(client, admin_headers, make_user):
    _populate(make_user)

    accounts = client.get("/api/dashboard/recent-accounts", params={"limit": 2}, headers=admin_headers).json()["accounts"]

    assert [a["email"] for a in accounts] == ["admin@email.com", "eleve@email.com"]
    assert accounts[1]["timeAgo"] == "Il y a 1 heure"
    assert accounts[1]["initials"] == "JD"
    assert accounts[1]["status"] == "Actif"
    assert client.get("/api/dashboard/recent-accounts", params={"limit": 0}, headers=admin_headers).status_code == 422


def test_dashboard_summary(client, admin_headers, make_user):
    _populate(make_user)

    body = client.get("/api/dashboard/summary", headers=admin_headers).json()

    assert body["stats"]["enAttente"]["total"] == 1
    assert len(body["recentAccounts"]) == 4
    assert body["recentAccounts"][-1]["status"] in ("Actif", "En attente")
    assert body["lastUpdated"]


def test_dashboard_is_admin_only(client, instructor_headers):
    for path in ("/api/dashboard/stats", "/api/dashboard/recent-accounts", "/api/dashboard/summary"):
        assert client.get(path, headers=instructor_headers).status_code == 403
