import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.hbx.models import Permission, Role, User
from scripts._db_utils import script_session

PERMISSIONS = (
    ("admin.view", "Admin: view dashboard and audit log"),
    ("employers.view", "Employers: view"),
    ("employers.edit", "Employers: create, edit, manage roster"),
    ("plan_years.view", "Plan years: view"),
    ("plan_years.edit", "Plan years: create, edit, renew"),
    ("plan_years.publish", "Plan years: fire lifecycle events"),
    ("plan_years.admin", "Plan years: override eligibility, terminate, extend open enrollment"),
    ("agencies.view", "Agencies: view"),
    ("agencies.edit", "Agencies: approve, hire, assign"),
)


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@hbx.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///hbx.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        perms: list[Permission] = []
        for key, name in PERMISSIONS:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms.append(p)

        role_admin = s.query(Role).filter(Role.key == "admin").one_or_none()
        if not role_admin:
            role_admin = Role(key="admin", name="Administrator")
            s.add(role_admin)
        for p in perms:
            if p not in role_admin.permissions:
                role_admin.permissions.append(p)

        # Exchange staff: everything except overrides.
        role_staff = s.query(Role).filter(Role.key == "hbx_staff").one_or_none()
        if not role_staff:
            role_staff = Role(key="hbx_staff", name="Exchange staff")
            s.add(role_staff)
        for p in perms:
            if p.key != "plan_years.admin" and p not in role_staff.permissions:
                role_staff.permissions.append(p)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
