from __future__ import annotations

from pathlib import Path
from urllib.parse import unquote


def normalize_database_url_for_async(database_url: str) -> str:
    """Normalize DATABASE_URL to an async driver usable by the runtime engine.

    - SQLite: sqlite+aiosqlite://...
    - PostgreSQL: postgresql+psycopg://... (psycopg3 supports async natively)
    """
    url = (database_url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite://") and "+aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        return "postgresql+psycopg://" + url[len("postgresql://") :]

    return url


def normalize_database_url_for_alembic(database_url: str) -> str:
    """Alembic connects with a synchronous engine; strip async drivers."""
    url = (database_url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite+aiosqlite://", "sqlite://", 1)

    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        return "postgresql+psycopg://" + url[len("postgresql://") :]

    return url


def extract_sqlite_db_file_path(database_url: str) -> Path | None:
    """Best-effort local file path of a SQLite DATABASE_URL.

    Supports sqlite:///./relative.db, sqlite:////abs/path.db and the
    +aiosqlite variants. Returns None for in-memory and non-sqlite URLs.
    """

    url = (database_url or "").strip().split("#", 1)[0].split("?", 1)[0]
    if not url.lower().startswith("sqlite") or url.lower().endswith(":memory:"):
        return None

    sep = url.find("://")
    if sep == -1:
        return None

    rest = url[sep + 3 :]
    # sqlite:///./x.db -> "/./x.db"; sqlite:////tmp/x.db -> "//tmp/x.db"
    file_path = rest[1:] if rest.startswith("/") else rest
    file_path = unquote(file_path)
    if not file_path:
        return None
    return Path(file_path)


def ensure_sqlite_parent_dir(database_url: str) -> None:
    path = extract_sqlite_db_file_path(database_url)
    if path is None:
        return

    parent = path.parent
    if str(parent) in {"", "."}:
        return

    parent.mkdir(parents=True, exist_ok=True)
