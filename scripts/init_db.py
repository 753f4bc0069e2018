import os
import sys
from datetime import datetime
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.portal.models import User  # noqa: E402
from scripts._db_utils import resolve_database_url, script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> None:
    """
    Ensure the admin account exists with the ADMIN role.
    Idempotent; an existing admin keeps its password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    with script_session(resolve_database_url(database_url)) as s:
        user = s.query(User).filter(User.email == admin_email).one_or_none()
        now = datetime.utcnow()
        if not user:
            user = User(
                email=admin_email,
                name="Administrator",
                password_hash=generate_password_hash(admin_password),
                role="ADMIN",
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            s.add(user)
        elif user.role != "ADMIN":
            user.role = "ADMIN"
            user.updated_at = now

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
