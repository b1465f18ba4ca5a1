"""
Release phase: check SHOP market settings, migrate the schema, seed access control.

Runs before the web process starts. A broken settings file or a missing
DATABASE_URL stops the deploy here instead of at the first request.

Usage:
  python scripts/release.py [--skip-seed]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    url = (os.environ.get("DATABASE_URL") or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL must be set for the release phase.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and url.startswith("sqlite"):
        raise RuntimeError("sqlite is not supported in production; point DATABASE_URL at Postgres.")
    return url


def _check_market_settings() -> None:
    from app.hbx.config import load_shop_market_settings

    path = (os.environ.get("SHOP_MARKET_SETTINGS_FILE") or "").strip() or None
    settings = load_shop_market_settings(path)
    print(
        f"[release] market settings ok (source={path or 'defaults'}, "
        f"max_employees={settings.small_market_employee_count_maximum})",
        flush=True,
    )


def _migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")
    print("[release] schema at head", flush=True)


def run_release(*, seed: bool = True) -> None:
    db_url = _database_url()
    _check_market_settings()
    _migrate(db_url)
    if seed:
        from scripts import init_db

        # Existing admin passwords are left alone.
        init_db.seed_only(database_url=db_url)
        print("[release] permissions and roles seeded", flush=True)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Release-phase checks, migrations and seeding.")
    parser.add_argument("--skip-seed", action="store_true", help="Migrate only.")
    args = parser.parse_args(argv)
    run_release(seed=not args.skip_seed)


if __name__ == "__main__":
    main()
