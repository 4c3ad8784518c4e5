# config/validation.py

"""
Start-up validation of the production environment.

Each check returns a list of human-readable problems; ``validate_and_exit``
prints them all at once so an operator can fix the ``.env`` in one pass.
"""

import os
import sys
from typing import List, Tuple

KNOWN_SOURCES = ("acculynx", "jobnimbus", "csv", "roofr", "hover", "other")
PLACEHOLDER_SECRETS = {"", "your-secret-key", "your_secret_key"}


def _check_secret_key() -> List[str]:
    if os.environ.get("SECRET_KEY", "") in PLACEHOLDER_SECRETS:
        return [
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        ]
    return []


def _check_database() -> List[str]:
    if not os.environ.get("DATABASE_URL"):
        return ["DATABASE_URL is required in production. Set it to your PostgreSQL connection string."]
    return []


def _check_sources() -> List[str]:
    configured = {item.strip().lower() for item in os.environ.get("MIGRATION_SOURCES", "").split(",")}
    unknown = sorted(configured - set(KNOWN_SOURCES) - {""})
    if unknown:
        return [f"MIGRATION_SOURCES contains unknown sources: {', '.join(unknown)}"]
    return []


def _check_worker() -> List[str]:
    # The SQLite transport is for local development only.
    if os.environ.get("MIGRATION_WORKER_ENABLED", "false").lower() != "true":
        return []
    return [
        f"{name} is required when MIGRATION_WORKER_ENABLED=true"
        for name in ("CELERY_BROKER_URL", "CELERY_RESULT_BACKEND")
        if not os.environ.get(name)
    ]


CHECKS = (_check_secret_key, _check_database, _check_sources, _check_worker)


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Only production is checked; other environments always pass.

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []

    errors = [problem for check in CHECKS for problem in check()]
    return not errors, errors


def validate_and_exit(flask_env: str = None) -> None:
    """Print every validation problem to stderr and exit(1) if there are any."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    banner = "=" * 80
    print(banner, file=sys.stderr)
    print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
    print(banner, file=sys.stderr)
    print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)
    for number, error in enumerate(errors, 1):
        print(f"{number}. {error}", file=sys.stderr)
    print("\n" + banner, file=sys.stderr)
    print("Please check your .env file or environment variables.", file=sys.stderr)
    print(banner, file=sys.stderr)
    sys.exit(1)
