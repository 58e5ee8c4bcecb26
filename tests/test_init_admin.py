from init_admin import ensure_admin


def test_creates_first_admin(client, mongo, login):
    user_id = ensure_admin("chef@email.com", "secret123", "Chef")

    stored = mongo["user"].find_one({"email": "chef@email.com"})
    assert str(stored["_id"]) == user_id
    assert stored["role"] == "admin"
    assert stored["statut"] == "actif"
    login("chef@email.com")


def test_promotes_existing_user(mongo, make_user):
    user_id = make_user(email="chef@email.com", statut="en attente")

    assert ensure_admin("chef@email.com", "ignored1", "Chef") == user_id
    stored = mongo["user"].find_one({"email": "chef@email.com"})
    assert stored["role"] == "admin"
    assert stored["statut"] == "actif"


def test_is_idempotent(mongo):
    first = ensure_admin("chef@email.com", "secret123")
    assert ensure_admin("chef@email.com", "secret123") == first
    assert mongo["user"].count_documents({"email": "chef@email.com"}) == 1
