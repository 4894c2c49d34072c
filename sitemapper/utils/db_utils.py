"""Helpers for database connection strings.

Deployments hand us PostgreSQL DSNs in whatever form their platform uses
(``postgresql+psycopg2://``, ``postgres://``...). Tortoise ORM wants the
``asyncpg://`` scheme, and logs should never show the password.
"""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit


def to_asyncpg_dsn(url: str) -> str:
    """Convert a PostgreSQL DSN to the ``asyncpg://`` scheme for Tortoise.

    Non-PostgreSQL URLs (``sqlite://`` for local runs and tests) are returned
    untouched.
    """

    if url.startswith("postgresql+"):
        url = "postgresql://" + url.split("://", 1)[1]
    if url.startswith("postgresql://"):
        return "asyncpg://" + url[len("postgresql://") :]
    if url.startswith("postgres://"):
        return "asyncpg://" + url[len("postgres://") :]
    return url


def redact_dsn(url: str) -> str:
    """Replace the password of a DSN with ``***`` for logging."""

    parts = urlsplit(url)
    if not parts.password:
        return url

    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urlunsplit(parts._replace(netloc=netloc))
