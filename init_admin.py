import logging
import os

import database
from main import hash_password
from policy import ROLE_ADMIN
from schemas import User

logger = logging.getLogger(__name__)


# ======================================================
# ENV
# ======================================================

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Administrateur")


# ======================================================
# MAIN LOGIC
# ======================================================

def ensure_admin(email: str, password: str, name: str = "Administrateur") -> str:
    """
    Create the admin account, or promote and activate an existing user
    with that email. Returns the user id.
    """
    users = database.get_collection("user")
    existing = users.find_one({"email": email})

    if existing is None:
        user_id = database.create_document("user", User(
            nom=name,
            email=email,
            password_hash=hash_password(password),
            role=ROLE_ADMIN,
            statut="actif",
        ))
        logger.info(f"[BOOTSTRAP] Admin created ({email})")
        return user_id

    user_id = str(existing["_id"])
    if existing.get("role") != ROLE_ADMIN or existing.get("statut") != "actif":
        database.update_document("user", user_id, {"role": ROLE_ADMIN, "statut": "actif"})
        logger.info(f"[BOOTSTRAP] Existing user promoted to admin ({email})")
    else:
        logger.info(f"[BOOTSTRAP] Admin already present ({email})")
    return user_id


def main():
    if not ADMIN_EMAIL or not ADMIN_PASSWORD:
        raise RuntimeError("ADMIN_EMAIL and ADMIN_PASSWORD must be set")
    if database.db is None:
        raise RuntimeError("DATABASE_URL and DATABASE_NAME must be set")
    ensure_admin(ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_NAME)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
