"""
Runtime configuration for the reconciliation commands.

Values come from the process environment (optionally seeded from
``.env.local`` / ``.env`` in the working directory) and can be overridden
per invocation by command-line flags.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

from dotenv import load_dotenv

# Default configuration
DEFAULT_MONGODB_URI = "mongodb://localhost:27017/uniform-distribution"
ENV_FILES = (".env.local", ".env")

# Batch sizes and limits
BATCH_SIZE = 100  # documents per bulk write
SAMPLE_LIMIT = 5  # offending documents kept per category
ARRAY_SCAN_LIMIT = 100  # elements checked per array-valued field
WRITE_RETRIES = 2
EXECUTE_GRACE_SECONDS = 5
SERVER_SELECTION_TIMEOUT_MS = 10000

_CREDENTIALS_RE = re.compile(r"(?<=://)[^@/]+(?=@)")


def load_environment(base_dir: Optional[Path] = None) -> List[Path]:
    """Load .env.local then .env without overriding variables already set."""
    base = Path(base_dir) if base_dir else Path.cwd()
    loaded = []
    for name in ENV_FILES:
        env_path = base / name
        if env_path.is_file():
            load_dotenv(env_path, override=False)
            loaded.append(env_path)
    return loaded


def mask_uri(uri: str) -> str:
    """Hide the user:password part of a connection string."""
    return _CREDENTIALS_RE.sub("***", uri or "")


def _int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


@dataclass
class Settings:
    mongodb_uri: str = DEFAULT_MONGODB_URI
    database: Optional[str] = None
    batch_size: int = BATCH_SIZE
    sample_limit: int = SAMPLE_LIMIT
    array_scan_limit: int = ARRAY_SCAN_LIMIT
    write_retries: int = WRITE_RETRIES
    execute_grace_seconds: int = EXECUTE_GRACE_SECONDS
    server_selection_timeout_ms: int = SERVER_SELECTION_TIMEOUT_MS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        settings = cls(
            mongodb_uri=env.get("MONGODB_URI") or DEFAULT_MONGODB_URI,
            database=env.get("MONGODB_DATABASE") or None,
            batch_size=_int_env(env, "RECONCILE_BATCH_SIZE", BATCH_SIZE),
            sample_limit=_int_env(env, "RECONCILE_SAMPLE_LIMIT", SAMPLE_LIMIT),
            array_scan_limit=_int_env(env, "RECONCILE_ARRAY_SCAN_LIMIT", ARRAY_SCAN_LIMIT),
            write_retries=_int_env(env, "RECONCILE_WRITE_RETRIES", WRITE_RETRIES),
            execute_grace_seconds=_int_env(env, "RECONCILE_EXECUTE_GRACE_SECONDS", EXECUTE_GRACE_SECONDS),
            server_selection_timeout_ms=_int_env(
                env, "MONGODB_SERVER_SELECTION_TIMEOUT_MS", SERVER_SELECTION_TIMEOUT_MS
            ),
        )
        if settings.batch_size == 0:
            raise ValueError("RECONCILE_BATCH_SIZE must be at least 1")
        return settings
