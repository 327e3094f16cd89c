"""Application configuration for data paths, catalog location and daemon address."""

import os
from pathlib import Path
from typing import Optional

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 12320


def get_package_root() -> Path:
    """Get the package directory (where the bundled catalog lives)."""
    return Path(__file__).resolve().parent


def get_data_dir() -> Path:
    """
    Get the data directory for settings and the user catalog.

    Checks LLMS_DATA_DIR first, then falls back to ~/.local/share/llm-sessions.
    """
    if env_data_dir := os.getenv("LLMS_DATA_DIR"):
        return Path(env_data_dir).expanduser()

    return Path.home() / ".local" / "share" / "llm-sessions"


def get_catalog_path(explicit: Optional[str] = None) -> Path:
    """
    Get the model catalog manifest path with priority order:
    1. Explicit path (e.g. --catalog)
    2. Environment variable (LLMS_CATALOG)
    3. models.json in the data directory
    4. Bundled catalog/models.json

    Returns:
        Path to the manifest (may not exist)
    """
    if explicit:
        return Path(explicit).expanduser()

    env_catalog = os.getenv("LLMS_CATALOG")
    if env_catalog:
        return Path(env_catalog).expanduser()

    user_catalog = get_data_dir() / "models.json"
    if user_catalog.exists():
        return user_catalog

    return get_package_root() / "catalog" / "models.json"


def get_default_threads(catalog_default: Optional[int] = None) -> int:
    """
    Get the thread count handed to the inference binary with priority order:
    1. Catalog manifest "default_threads"
    2. Database settings (default_threads)
    3. Environment variable (LLMS_THREADS)
    4. Number of CPUs

    Returns:
        Thread count, at least 1
    """
    if catalog_default:
        return catalog_default

    # Avoid circular import by importing here
    from .db.settings import get_setting_int

    db_threads = get_setting_int("default_threads", 0)
    if db_threads > 0:
        return db_threads

    env_threads = os.getenv("LLMS_THREADS")
    if env_threads and env_threads.isdigit() and int(env_threads) > 0:
        return int(env_threads)

    return os.cpu_count() or 1


def get_server_host() -> str:
    return os.getenv("LLMS_HOST", DEFAULT_HOST)


def get_server_port() -> int:
    try:
        return int(os.getenv("LLMS_PORT", str(DEFAULT_PORT)))
    except ValueError:
        return DEFAULT_PORT


def get_server_url() -> str:
    """Base URL the CLI uses to reach the daemon (LLMS_URL overrides host/port)."""
    env_url = os.getenv("LLMS_URL")
    if env_url:
        return env_url.rstrip("/")
    return f"http://{get_server_host()}:{get_server_port()}"
