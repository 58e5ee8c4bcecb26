from datetime import timedelta

import pytest

import database


@pytest.fixture
def people(mongo, make_user):
    student_id = make_user(
        email="eleve@email.com", nom="Jean Dupont", theoreticalHours=20, practicalHours=10,
    )
    instructor_id = make_user(email="moniteur@email.com", role="instructeur", nom="Marc Moniteur")
    return {"student": student_id, "instructor": instructor_id}


def _course(client, headers, people, **overrides):
    payload = {
        "title": "Leçon",
        "instructorId": people["instructor"],
        "studentId": people["student"],
        "schedule": "2024-01-10T10:00:00",
    }
    payload.update(overrides)
    response = client.post("/api/courses", json=payload, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["id"]


def test_first_login_activates_account(client, mongo, admin_headers, login):
    created = client.post(
        "/auth/create-user",
        json={"email": "nina@email.com", "password": "secret123", "nom": "Nina Nouvelle", "role": "eleve"},
        headers=admin_headers,
    )
    user_id = created.json()["userId"]
    client.patch(f"/api/users/{user_id}/status", json={"statut": "en formation"}, headers=admin_headers)

    response = client.post("/auth/login", json={"email": "nina@email.com", "password": "secret123"})
    assert response.json()["user"]["isFirstLogin"] is True
    headers = {"Authorization": f"Bearer {response.json()['token']}"}

    first = client.post(f"/api/student-profile/first-login/{user_id}", headers=headers)
    assert first.status_code == 200
    assert first.json() == {"message": "First login recorded", "statusChanged": True, "newStatus": "actif"}

    stored = mongo["user"].find_one({"email": "nina@email.com"})
    assert stored["isFirstLogin"] is False
    assert stored["statut"] == "actif"
    assert stored["firstLoginAt"] is not None

    again = client.post(f"/api/student-profile/first-login/{user_id}", headers=headers)
    assert again.json()["statusChanged"] is False
    assert client.get("/auth/verify-token", headers=headers).json()["user"]["isFirstLogin"] is False


def test_first_login_only_for_self(client, people, login):
    headers = login("eleve@email.com")
    response = client.post(f"/api/student-profile/first-login/{people['instructor']}", headers=headers)
    assert response.status_code == 403


def test_profile_access(client, people, make_user, login):
    own = client.get(f"/api/student-profile/{people['student']}", headers=login("eleve@email.com"))
    assert own.status_code == 200
    body = own.json()
    assert body["progressionGlobale"] == 50
    assert body["coursTheoriques"] == {"completed": 20, "total": 40}
    assert body["idEleve"] == people["student"][:8]
    assert body["licenseType"] == "B"

    staff = login("moniteur@email.com")
    assert client.get(f"/api/student-profile/{people['student']}", headers=staff).status_code == 200
    assert client.get(f"/api/student-profile/{people['instructor']}", headers=staff).status_code == 400
    assert client.get("/api/student-profile/65a000000000000000000000", headers=staff).status_code == 404

    make_user(email="autre@email.com", nom="Paul Autre")
    other = login("autre@email.com")
    assert client.get(f"/api/student-profile/{people['student']}", headers=other).status_code == 403


def test_student_edits_contact_details_only(client, mongo, people, login):
    headers = login("eleve@email.com")
    url = f"/api/student-profile/{people['student']}"

    response = client.put(url, json={"telephone": "06 12 34 56 78", "licenseType": "A"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["updatedFields"] == ["licenseType", "telephone"]

    assert client.put(url, json={"practicalHours": 40}, headers=headers).status_code == 403
    assert client.put(url, json={"telephone": "abc"}, headers=headers).status_code == 422


def test_staff_edits_training_progress(client, mongo, people, login):
    response = client.put(
        f"/api/student-profile/{people['student']}",
        json={"practicalHours": 15, "nextExam": "2024-06-01", "statut": "en formation"},
        headers=login("moniteur@email.com"),
    )
    assert response.status_code == 200

    stored = mongo["user"].find_one({"email": "eleve@email.com"})
    assert stored["practicalHours"] == 15
    assert stored["nextExam"] == "2024-06-01"
    assert stored["statut"] == "en formation"


def test_progress_counts_completed_courses(client, people, login):
    staff = login("moniteur@email.com")
    _course(client, staff, people, type="code", status="completed", duration=2)
    _course(client, staff, people, type="conduite", status="completed", duration=5)
    _course(client, staff, people, type="conduite", duration=1)

    progress = client.get("/api/student/progress", headers=login("eleve@email.com")).json()["progress"]

    by_type = {p["type"]: p for p in progress}
    assert by_type["code"]["completedHours"] == 2
    assert by_type["code"]["percentage"] == 5
    assert by_type["conduite"]["percentage"] == 10
    assert by_type["autoroute"]["completedHours"] == 0
    assert client.get("/api/student/progress", headers=staff).status_code == 403


def test_statistics_and_activity(client, people, login):
    staff = login("moniteur@email.com")
    _course(client, staff, people, type="code", status="completed", duration=2, schedule="2024-01-08T10:00:00")
    _course(client, staff, people, type="conduite", status="completed", duration=5, schedule="2024-01-09T10:00:00")
    _course(client, staff, people, type="autoroute", duration=1, schedule="2024-01-10T10:00:00")
    for result in ("passed", "failed"):
        response = client.post(
            "/api/exam-results",
            json={"studentId": people["student"], "type": "code", "result": result},
            headers=staff,
        )
        assert response.status_code == 201

    student = login("eleve@email.com")
    stats = client.get("/api/student/statistics", headers=student).json()["statistics"]
    assert stats["totalHours"]["value"] == 8
    assert stats["drivingHours"]["value"] == 6
    assert stats["codeTests"]["value"] == 2
    assert stats["successRate"]["value"] == 50

    activities = client.get("/api/student/activity", headers=student).json()["activities"]
    assert len(activities) == 5
    assert {a["type"] for a in activities[:2]} == {"test_passed", "test_failed"}
    assert activities[2]["type"] == "lesson_scheduled"
    assert activities[-1]["type"] == "lesson_completed"
    assert activities[-1]["timeAgo"].startswith("Il y a")

    assert len(client.get("/api/student/activity", params={"limit": 2}, headers=student).json()["activities"]) == 2


def test_exam_results_need_staff_and_a_student(client, people, login):
    payload = {"studentId": people["student"], "result": "passed"}
    assert client.post("/api/exam-results", json=payload, headers=login("eleve@email.com")).status_code == 403

    staff = login("moniteur@email.com")
    bad = client.post("/api/exam-results", json={**payload, "studentId": people["instructor"]}, headers=staff)
    assert bad.status_code == 400


def test_profile_counts_evaluations(client, mongo, people, login):
    mongo["exam_result"].insert_one({
        "studentId": people["student"], "type": "code", "result": "passed", "createdAt": database.now_utc() - timedelta(days=1),
    })
    body = client.get(f"/api/student-profile/{people['student']}", headers=login("eleve@email.com")).json()
    assert body["evaluations"] == {"completed": 1, "total": 4}
