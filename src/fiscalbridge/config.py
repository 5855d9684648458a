from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "fiscal-bridge"
KEYRING_SERVICE = "fiscal-bridge"
KEYRING_USERNAME = "cert-pfx-password"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Returns None if only platformdirs would resolve and the dir does not exist yet.
    """
    from_env = os.environ.get("FISCALBRIDGE_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/fiscalbridge/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FISCALBRIDGE_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FISCALBRIDGE_DATA_DIR", "data", kind="data")


ENDPOINTS = {
    "sandbox": "https://sandbox.fiscal-backend.example/api/v1",
    "production": "https://fiscal-backend.example/api/v1",
}


@dataclass(frozen=True)
class Settings:
    """Runtime settings loaded from config/bridge.yaml."""

    env: str = "sandbox"
    backend_url: str | None = None
    inbox_dir: str | None = None
    max_retries: int = 3
    retry_delay: float = 5.0
    probe_base_delay: float = 2.0
    probe_max_delay: float = 60.0
    debounce: float = 0.5
    poll_interval: float = 0.25
    log_capacity: int = 50
    request_timeout: float = 30.0
    alert_threshold: int = 5

    @property
    def base_url(self) -> str:
        if self.backend_url:
            return self.backend_url.rstrip("/")
        return ENDPOINTS[self.env]

    @property
    def inbox_path(self) -> Path:
        if self.inbox_dir:
            return Path(self.inbox_dir).expanduser()
        return get_data_dir() / "inbox"

    @classmethod
    def from_dict(cls, d: dict | None) -> Settings:
        """Create Settings from a YAML-loaded dict; unknown keys are rejected."""
        d = d or {}
        known = {f.name: f for f in fields(cls)}
        unknown = set(d) - set(known)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        if "env" in d and d["env"] not in ENDPOINTS:
            raise ValueError(f"env must be one of {sorted(ENDPOINTS)}, got {d['env']!r}")
        settings = cls(**d)
        if settings.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if settings.log_capacity < 1:
            raise ValueError("log_capacity must be at least 1")
        return settings

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# --- Keyring helpers ---


def _get_keyring_password() -> str | None:
    """Try to get the certificate password from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception:
        return None


def _set_keyring_password(password: str) -> bool:
    """Store the certificate password in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, password)
        return True
    except Exception:
        return False


# --- Certificate access ---


def get_cert_path() -> str:
    """Return the path to the .pfx certificate from CERT_PFX_PATH env var.

    Raises KeyError if the variable is not set.
    """
    return os.environ["CERT_PFX_PATH"]


def get_cert_password() -> str:
    """Return the certificate password.

    Priority: 1) CERT_PFX_PASSWORD env var, 2) OS keyring.
    Raises KeyError if neither source has the password.
    """
    pwd = os.environ.get("CERT_PFX_PASSWORD")
    if pwd is not None:
        return pwd
    pwd = _get_keyring_password()
    if pwd is not None:
        return pwd
    raise KeyError("CERT_PFX_PASSWORD")


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text()) or {}


def settings_path() -> Path:
    return get_config_dir() / "bridge.yaml"


def load_settings() -> Settings:
    """Load settings from config/bridge.yaml, falling back to defaults."""
    path = settings_path()
    if not path.is_file():
        return Settings()
    return Settings.from_dict(load_yaml(path))


def get_store_path() -> Path:
    return get_data_dir() / "state.json"
