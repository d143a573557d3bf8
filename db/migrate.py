from __future__ import annotations

import hashlib
import importlib.util
import re
import sqlite3
from datetime import datetime, timezone
from pathlib import Path


MIGRATION_RE = re.compile(r"^(\d{4})_([a-zA-Z0-9_]+)\.py$")
DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

REQUIRED_COLUMNS: dict[str, list[str]] = {
    "servers": ["id", "name", "member_count"],
    "channels": ["id", "server_id", "name", "type", "topic"],
    "users": ["id", "username", "display_name", "avatar_url", "opt_out"],
    "messages": [
        "message_id", "server_id", "channel_id", "author_id", "content",
        "embedding", "embedding_dim", "message_type", "reply_to",
        "created_at_utc", "created_ts", "updated_at_utc", "deleted_at_utc",
    ],
    "channel_state": ["channel_id", "backfill_done", "last_backfill_at_utc", "backfilled_count"],
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _checksum_file(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def _ensure_migration_table(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at_utc TEXT NOT NULL
        )
        """
    )
    conn.commit()


def _load_applied(conn: sqlite3.Connection) -> dict[str, tuple[str, str]]:
    cur = conn.cursor()
    cur.execute("SELECT version, name, checksum FROM schema_migrations")
    return {str(version): (str(name), str(checksum)) for version, name, checksum in cur.fetchall()}


def _run_py(conn: sqlite3.Connection, path: Path) -> None:
    spec = importlib.util.spec_from_file_location(f"glue_migration_{path.stem}", str(path))
    if spec is None or spec.loader is None:
        raise RuntimeError(f"Could not load migration module: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    upgrade = getattr(module, "upgrade", None)
    if not callable(upgrade):
        raise RuntimeError(f"Python migration missing upgrade(conn): {path}")
    upgrade(conn)


def apply_sqlite_migrations(conn: sqlite3.Connection, migrations_dir: str | Path | None = None) -> list[str]:
    """Apply pending numbered migrations in order. Returns the versions applied."""
    _ensure_migration_table(conn)
    applied = _load_applied(conn)
    base = Path(migrations_dir) if migrations_dir else DEFAULT_MIGRATIONS_DIR
    if not base.exists():
        raise RuntimeError(f"Migrations directory not found: {base}")

    ran: list[str] = []
    cur = conn.cursor()
    for path in sorted(base.iterdir()):
        m = MIGRATION_RE.match(path.name)
        if not (path.is_file() and m):
            continue
        version, name = m.group(1), m.group(2)
        checksum = _checksum_file(path)
        existing = applied.get(version)
        if existing:
            if existing != (name, checksum):
                raise RuntimeError(
                    f"Migration version {version} already applied with different content "
                    f"(existing name={existing[0]}, file name={name})."
                )
            continue

        print(f"[DB] Applying migration {path.name}")
        _run_py(conn, path)
        cur.execute(
            "INSERT INTO schema_migrations (version, name, checksum, applied_at_utc) VALUES (?, ?, ?, ?)",
            (version, name, checksum, _utc_now_iso()),
        )
        conn.commit()
        ran.append(version)
    return ran


def list_schema_migrations_sync(conn: sqlite3.Connection, limit: int = 200) -> list[tuple[str, str, str]]:
    cur = conn.cursor()
    try:
        cur.execute(
            "SELECT version, name, applied_at_utc FROM schema_migrations ORDER BY version DESC LIMIT ?",
            (max(1, min(int(limit), 500)),),
        )
        return cur.fetchall()
    except sqlite3.OperationalError:
        return []


def missing_columns(conn: sqlite3.Connection) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    cur = conn.cursor()
    for table, required in REQUIRED_COLUMNS.items():
        cur.execute(f"PRAGMA table_info({table})")
        cols = {str(row[1]) for row in cur.fetchall()}
        missing = [c for c in required if c not in cols]
        if missing:
            out[table] = missing
    return out


def open_db(db_path: str, migrations_dir: str | Path | None = None) -> sqlite3.Connection:
    # check_same_thread=False: the connection is used from asyncio.to_thread workers
    conn = sqlite3.connect(db_path, check_same_thread=False)
    cur = conn.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    apply_sqlite_migrations(conn, migrations_dir)

    missing = missing_columns(conn)
    if missing:
        for table, cols in missing.items():
            print(f"[DB] {table} schema missing columns: {cols}")
    else:
        print(f"[DB] schema OK tables={sorted(REQUIRED_COLUMNS)}")
    return conn
