"""Default values for client configuration."""

from typing import Dict

DEFAULT_BASE_URL = "http://localhost:3000"
DEFAULT_VOICE_URL = "ws://localhost:3000/voice"
DEFAULT_API_VERSION = "v1"
DEFAULT_REQUEST_TIMEOUT_SEC = 30.0
DEFAULT_CHUNK_SIZE_BYTES = 64 * 1024
DEFAULT_CHUNK_DELAY_SEC = 0.05
DEFAULT_TICK_INTERVAL_SEC = 1.0
DEFAULT_RESPONSE_HOLD_SEC = 0.5
DEFAULT_AUTO_START_SESSION = True
DEFAULT_CREDENTIAL_PATH = None
DEFAULT_CREDENTIAL_SCOPE = "assistant_client"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = None

LOGIN_ENDPOINT = "/auth/login"
REGISTER_ENDPOINT = "/auth/register"
REFRESH_ENDPOINT = "/auth/refresh"
LOGOUT_ENDPOINT = "/auth/logout"
SUBSCRIPTION_STATUS_ENDPOINT = "/subscription/status"

PUBLIC_AUTH_PATHS = frozenset({LOGIN_ENDPOINT, REGISTER_ENDPOINT, REFRESH_ENDPOINT})

CLIENT_SECTION_MAP: Dict[str, Dict[str, str]] = {
    "server": {
        "base_url": "base_url",
        "voice_url": "voice_url",
        "api_version": "api_version",
    },
    "http": {
        "timeout_sec": "request_timeout_sec",
    },
    "voice": {
        "chunk_size_bytes": "chunk_size_bytes",
        "chunk_delay_sec": "chunk_delay_sec",
        "tick_interval_sec": "tick_interval_sec",
        "response_hold_sec": "response_hold_sec",
        "auto_start_session": "auto_start_session",
    },
    "credentials": {
        "path": "credential_path",
        "scope": "credential_scope",
        "secret": "credential_secret",
    },
    "logging": {
        "level": "log_level",
        "file": "log_file",
    },
}

__all__ = [
    "DEFAULT_BASE_URL",
    "DEFAULT_VOICE_URL",
    "DEFAULT_API_VERSION",
    "DEFAULT_REQUEST_TIMEOUT_SEC",
    "DEFAULT_CHUNK_SIZE_BYTES",
    "DEFAULT_CHUNK_DELAY_SEC",
    "DEFAULT_TICK_INTERVAL_SEC",
    "DEFAULT_RESPONSE_HOLD_SEC",
    "DEFAULT_AUTO_START_SESSION",
    "DEFAULT_CREDENTIAL_PATH",
    "DEFAULT_CREDENTIAL_SCOPE",
    "DEFAULT_LOG_LEVEL",
    "DEFAULT_LOG_FILE",
    "LOGIN_ENDPOINT",
    "REGISTER_ENDPOINT",
    "REFRESH_ENDPOINT",
    "LOGOUT_ENDPOINT",
    "SUBSCRIPTION_STATUS_ENDPOINT",
    "PUBLIC_AUTH_PATHS",
    "CLIENT_SECTION_MAP",
]
