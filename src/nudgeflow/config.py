"""Summary: Application configuration for NudgeFlow.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for providers, storage and the sweep.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    db_path: str
    api_host: str
    api_port: int
    api_key: str
    default_account_name: str
    default_account_email: str
    default_company_name: str
    google_client_id: str
    google_client_secret: str
    microsoft_client_id: str
    microsoft_client_secret: str
    oauth_redirect_uri: str
    google_token_url: str
    microsoft_token_url: str
    google_api_base_url: str
    google_userinfo_url: str
    microsoft_graph_base_url: str
    token_secret: str
    sweep_enabled: bool
    sweep_interval_seconds: float
    dispatch_concurrency: int
    max_send_attempts: int
    http_timeout_seconds: float
    token_refresh_margin_seconds: int
    claim_ttl_seconds: int
    business_hours_start: int
    business_hours_end: int
    upcoming_window_days: int
    footer_html: str
    footer_text: str

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig(
            db_path=os.getenv("NUDGEFLOW_DB_PATH", defaults["db_path"]),
            api_host=os.getenv("NUDGEFLOW_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("NUDGEFLOW_API_PORT", defaults["api_port"])),
            api_key=os.getenv("NUDGEFLOW_API_KEY", defaults["api_key"]),
            default_account_name=os.getenv(
                "NUDGEFLOW_DEFAULT_ACCOUNT_NAME", defaults["default_account_name"]
            ),
            default_account_email=os.getenv(
                "NUDGEFLOW_DEFAULT_ACCOUNT_EMAIL", defaults["default_account_email"]
            ),
            default_company_name=os.getenv(
                "NUDGEFLOW_DEFAULT_COMPANY_NAME", defaults["default_company_name"]
            ),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", defaults["google_client_id"]),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", defaults["google_client_secret"]),
            microsoft_client_id=os.getenv("MICROSOFT_CLIENT_ID", defaults["microsoft_client_id"]),
            microsoft_client_secret=os.getenv(
                "MICROSOFT_CLIENT_SECRET", defaults["microsoft_client_secret"]
            ),
            oauth_redirect_uri=os.getenv(
                "NUDGEFLOW_OAUTH_REDIRECT_URI", defaults["oauth_redirect_uri"]
            ),
            google_token_url=os.getenv("GOOGLE_TOKEN_URL", defaults["google_token_url"]),
            microsoft_token_url=os.getenv("MICROSOFT_TOKEN_URL", defaults["microsoft_token_url"]),
            google_api_base_url=os.getenv("GOOGLE_API_BASE_URL", defaults["google_api_base_url"]),
            google_userinfo_url=os.getenv("GOOGLE_USERINFO_URL", defaults["google_userinfo_url"]),
            microsoft_graph_base_url=os.getenv(
                "MICROSOFT_GRAPH_BASE_URL", defaults["microsoft_graph_base_url"]
            ),
            token_secret=os.getenv("NUDGEFLOW_TOKEN_SECRET", defaults["token_secret"]),
            sweep_enabled=_parse_bool(
                os.getenv("NUDGEFLOW_SWEEP_ENABLED", defaults["sweep_enabled"])
            ),
            sweep_interval_seconds=float(
                os.getenv("NUDGEFLOW_SWEEP_INTERVAL_SECONDS", defaults["sweep_interval_seconds"])
            ),
            dispatch_concurrency=int(
                os.getenv("NUDGEFLOW_DISPATCH_CONCURRENCY", defaults["dispatch_concurrency"])
            ),
            max_send_attempts=int(
                os.getenv("NUDGEFLOW_MAX_SEND_ATTEMPTS", defaults["max_send_attempts"])
            ),
            http_timeout_seconds=float(
                os.getenv("NUDGEFLOW_HTTP_TIMEOUT_SECONDS", defaults["http_timeout_seconds"])
            ),
            token_refresh_margin_seconds=int(
                os.getenv(
                    "NUDGEFLOW_TOKEN_REFRESH_MARGIN_SECONDS",
                    defaults["token_refresh_margin_seconds"],
                )
            ),
            claim_ttl_seconds=int(
                os.getenv("NUDGEFLOW_CLAIM_TTL_SECONDS", defaults["claim_ttl_seconds"])
            ),
            business_hours_start=int(
                os.getenv("NUDGEFLOW_BUSINESS_HOURS_START", defaults["business_hours_start"])
            ),
            business_hours_end=int(
                os.getenv("NUDGEFLOW_BUSINESS_HOURS_END", defaults["business_hours_end"])
            ),
            upcoming_window_days=int(
                os.getenv("NUDGEFLOW_UPCOMING_WINDOW_DAYS", defaults["upcoming_window_days"])
            ),
            footer_html=os.getenv("NUDGEFLOW_FOOTER_HTML", defaults["footer_html"]),
            footer_text=os.getenv("NUDGEFLOW_FOOTER_TEXT", defaults["footer_text"]),
        )


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AppConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def _parse_bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"Invalid boolean value: {value}")
