import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from schemas import User


@pytest.fixture
def mongo(monkeypatch):
    """A fresh in-memory database patched in everywhere the app reads `db`."""
    test_db = mongomock.MongoClient(tz_aware=True)["auto_ecole_test"]
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(main, "db", test_db)
    return test_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


@pytest.fixture
def make_user(mongo):
    def _make_user(email="eleve@email.com", password="secret123", role="eleve", statut="actif", nom="Jean Dupont", **extra):
        user = User(nom=nom, email=email, password_hash=main.hash_password(password), role=role, statut=statut)
        return database.create_document("user", {**user.model_dump(), **extra})
    return _make_user


@pytest.fixture
def login(client):
    def _login(email, password="secret123"):
        response = client.post("/auth/login", json={"email": email, "password": password})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['token']}"}
    return _login


@pytest.fixture
def admin_headers(make_user, login):
    make_user(email="admin@email.com", role="admin", nom="Alice Admin")
    return login("admin@email.com")


@pytest.fixture
def instructor_headers(make_user, login):
    make_user(email="moniteur@email.com", role="instructeur", nom="Marc Moniteur")
    return login("moniteur@email.com")


@pytest.fixture
def student_headers(make_user, login):
    make_user(email="eleve@email.com", role="eleve", nom="Jean Dupont")
    return login("eleve@email.com")
