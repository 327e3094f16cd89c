"""SQLite-backed daemon settings.

Settings live in ``settings.db`` in the data directory so they survive
restarts and can be changed over the API. Registry timeouts are read once
when the daemon builds its registry.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Optional

# (key, default value, description)
DEFAULT_SETTINGS = [
    ("default_threads", "", "Threads passed to the inference binary (empty=CPU count)"),
    ("idle_timeout_ms", "1500", "Milliseconds of output silence that completes a response"),
    ("first_output_timeout_seconds", "120", "Seconds to wait for the first output byte of a response"),
    ("startup_timeout_seconds", "60", "Seconds to wait for a session's prompt marker after spawn"),
    ("stop_grace_seconds", "5", "Seconds between SIGTERM and SIGKILL when stopping a session"),
    ("spawn_check_seconds", "0.2", "Seconds a fresh process must survive to count as started"),
]

# Settings that must be whole numbers; every known setting is positive
INTEGER_SETTINGS = {"default_threads", "idle_timeout_ms"}
# Settings where an empty value means "derive it"
OPTIONAL_SETTINGS = {"default_threads"}


def get_db_path() -> Path:
    from ..config import get_data_dir
    data_dir = get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "settings.db"


@contextmanager
def get_db(timeout: float = 5.0):
    """
    Open the settings database; commits on success, rolls back on error.

    Args:
        timeout: Lock wait in seconds (the CLI and daemon may both open it)
    """
    conn = sqlite3.connect(get_db_path(), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")

    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_settings_table():
    """Create the settings table and seed missing defaults."""
    with get_db() as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                description TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.executemany("""
            INSERT OR IGNORE INTO settings (key, value, description)
            VALUES (?, ?, ?)
        """, DEFAULT_SETTINGS)


def get_setting(key: str, default: Any = None) -> Optional[str]:
    """
    Get a raw setting value.

    Args:
        key: Setting key
        default: Returned when the key is not stored

    Returns:
        Stored string, or default
    """
    with get_db() as conn:
        row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default


def get_setting_int(key: str, default: int = 0) -> int:
    """Setting as int; default when missing, empty or not a number."""
    value = get_setting(key)
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def get_setting_float(key: str, default: Optional[float] = None) -> Optional[float]:
    """Setting as float; default when missing, empty or not a number."""
    value = get_setting(key)
    if not value or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def validate_setting(key: str, value: str) -> str:
    """
    Check a value before it is stored.

    Returns:
        The normalized value

    Raises:
        KeyError: If key is not a known setting
        ValueError: If value is not a positive number of the right kind
    """
    if key not in {k for k, _, _ in DEFAULT_SETTINGS}:
        raise KeyError(key)

    value = value.strip()
    if not value and key in OPTIONAL_SETTINGS:
        return ""
    try:
        number = float(value)
    except ValueError:
        raise ValueError(f"Setting '{key}' must be a number, got '{value}'") from None
    if number <= 0:
        raise ValueError(f"Setting '{key}' must be positive, got '{value}'")
    if key in INTEGER_SETTINGS:
        if not number.is_integer():
            raise ValueError(f"Setting '{key}' must be a whole number, got '{value}'")
        return str(int(number))
    return value


def set_setting(key: str, value: str, description: Optional[str] = None) -> None:
    """Insert or update a setting; the description is kept unless given."""
    with get_db() as conn:
        conn.execute("""
            INSERT INTO settings (key, value, description, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                description = COALESCE(excluded.description, settings.description),
                updated_at = CURRENT_TIMESTAMP
        """, (key, str(value), description))


def get_all_settings() -> Dict[str, str]:
    """All settings as {key: value}."""
    with get_db() as conn:
        rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
        return {row["key"]: row["value"] for row in rows}
