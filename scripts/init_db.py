import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.orgdocs.models import Organization, OrganizationMember, User  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the default organization and its admin member in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@orgdocs.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    org_name = (os.environ.get("ORGANIZATION_NAME") or "Default Organization").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///orgdocs.db").strip()

    with script_session(db_url, create_schema=db_url.startswith("sqlite")) as s:
        org = s.query(Organization).filter(Organization.name == org_name).one_or_none()
        if not org:
            org = Organization(name=org_name)
            s.add(org)
            s.flush()

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                handle="admin",
                password_hash=generate_password_hash(admin_password),
                is_active=True,
            )
            s.add(user)
            s.flush()

        member = (
            s.query(OrganizationMember)
            .filter(OrganizationMember.organization_id == org.id, OrganizationMember.user_id == user.id)
            .one_or_none()
        )
        if not member:
            s.add(OrganizationMember(organization_id=org.id, user_id=user.id, role_key="admin", is_active=True))
        elif not member.is_active:
            member.is_active = True

    print("Initialized database (seed_only).")
    print(f"Organization: {org_name}")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
