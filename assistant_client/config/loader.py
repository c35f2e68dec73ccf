import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from assistant_client import PROJECT_ROOT
from assistant_client.config.default import (
    CLIENT_SECTION_MAP,
    DEFAULT_API_VERSION,
    DEFAULT_AUTO_START_SESSION,
    DEFAULT_BASE_URL,
    DEFAULT_CHUNK_DELAY_SEC,
    DEFAULT_CHUNK_SIZE_BYTES,
    DEFAULT_CREDENTIAL_PATH,
    DEFAULT_CREDENTIAL_SCOPE,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_REQUEST_TIMEOUT_SEC,
    DEFAULT_RESPONSE_HOLD_SEC,
    DEFAULT_TICK_INTERVAL_SEC,
    DEFAULT_VOICE_URL,
)

_BASE_URL_ENV = "ASSISTANT_API_URL"
_VOICE_URL_ENV = "ASSISTANT_VOICE_URL"
_CREDENTIAL_SECRET_ENV = "ASSISTANT_CREDENTIAL_SECRET"


@dataclass
class ClientConfig:
    base_url: str = DEFAULT_BASE_URL
    voice_url: str = DEFAULT_VOICE_URL
    api_version: str = DEFAULT_API_VERSION
    request_timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC
    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE_BYTES
    chunk_delay_sec: float = DEFAULT_CHUNK_DELAY_SEC
    tick_interval_sec: float = DEFAULT_TICK_INTERVAL_SEC
    response_hold_sec: Optional[float] = DEFAULT_RESPONSE_HOLD_SEC
    auto_start_session: bool = DEFAULT_AUTO_START_SESSION
    credential_path: Optional[str] = DEFAULT_CREDENTIAL_PATH
    credential_scope: str = DEFAULT_CREDENTIAL_SCOPE
    credential_secret: Optional[str] = None
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[str] = DEFAULT_LOG_FILE

    @property
    def default_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-API-Version": self.api_version,
        }


DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "client.yaml"


def load_config(path: Optional[Path] = None) -> ClientConfig:
    """Load client configuration from YAML, falling back to defaults.

    Environment variables override the file for the API URLs and the
    credential secret so deployments need not ship secrets in YAML.
    """
    cfg = ClientConfig()
    data = _read_yaml(path or DEFAULT_CONFIG_PATH)
    if data:
        _apply_sections(cfg, data)
    _apply_env(cfg)
    return cfg


def _read_yaml(path: Optional[Path]) -> Optional[Dict[str, Any]]:
    if not path or not path.exists():
        return None
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if isinstance(data, dict):
        return data
    return None


def _apply_sections(cfg: ClientConfig, raw: Dict[str, Any]) -> None:
    field_names = {f.name for f in fields(ClientConfig)}
    for section, mapping in CLIENT_SECTION_MAP.items():
        data = raw.get(section)
        if not isinstance(data, dict):
            continue
        for key, attr in mapping.items():
            if key in data and data[key] is not None:
                setattr(cfg, attr, data[key])

    for key, value in raw.items():
        if key in CLIENT_SECTION_MAP:
            continue
        if key in field_names and value is not None:
            setattr(cfg, key, value)


def _apply_env(cfg: ClientConfig) -> None:
    base_url = os.getenv(_BASE_URL_ENV, "").strip()
    if base_url:
        cfg.base_url = base_url
    voice_url = os.getenv(_VOICE_URL_ENV, "").strip()
    if voice_url:
        cfg.voice_url = voice_url
    secret = os.getenv(_CREDENTIAL_SECRET_ENV, "").strip()
    if secret:
        cfg.credential_secret = secret


__all__ = [
    "ClientConfig",
    "DEFAULT_CONFIG_PATH",
    "load_config",
]
