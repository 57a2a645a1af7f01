"""
Check that the credential store and session cache are reachable.
Run before starting the app: python scripts/check_services.py

Requires PostgreSQL and Redis running. Create the database first:

  sudo -u postgres psql
  CREATE USER auth WITH PASSWORD 'auth';
  CREATE DATABASE auth_db OWNER auth;
  GRANT ALL PRIVILEGES ON DATABASE auth_db TO auth;
  \q

then apply migrations with `alembic upgrade head`.
"""

import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from authbackend.config import settings
from authbackend.core.database import check_connection
from authbackend.core.exceptions import ServiceUnavailableError
from authbackend.services.session_cache import build_session_cache


def main():
    failed = False
    try:
        check_connection()
        print("Credential store connection OK.")
    except ServiceUnavailableError:
        print(f"Cannot connect to the credential store at {settings.POSTGRES_HOST}:{settings.POSTGRES_PORT}.")
        failed = True

    try:
        build_session_cache().ping()
        print(f"Session cache ({settings.SESSION_CACHE_BACKEND}) OK.")
    except ServiceUnavailableError:
        print(f"Cannot connect to the session cache at {settings.REDIS_URL}.")
        failed = True

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
