from __future__ import annotations

import os
from pathlib import Path

API_KEY_ENV_VARS = ("SAFESCAN_VT_API_KEY", "VIRUSTOTAL_API_KEY")
API_KEY_PLACEHOLDER = "${VIRUS_TOTAL_API_KEY}"
DEFAULT_VOTER_ID = "local"


def load_dotenv(path: Path = Path(".env")) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#") or "=" not in raw:
            continue
        key, value = raw.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def data_dir() -> Path:
    root = _env("SAFESCAN_HOME")
    if root:
        return Path(root).expanduser()
    return Path.home() / ".safescan"


def resolve_api_key() -> str | None:
    for name in API_KEY_ENV_VARS:
        value = _env(name)
        if value and value != API_KEY_PLACEHOLDER:
            return value
    return None


def resolve_voter_id(configured: str | None = None) -> str:
    if configured and configured.strip():
        return configured.strip()
    return _env("SAFESCAN_VOTER_ID") or DEFAULT_VOTER_ID
