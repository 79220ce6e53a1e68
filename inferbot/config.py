"""Configuration loading for the inferbot gateway.

Settings come from ``$INFERBOT_HOME/inferbot.conf`` (``key=value`` lines,
``#`` comments) overlaid with environment variables. Environment variables
use the upper-cased key prefixed with ``INFERBOT_`` (``FAL_API_KEY`` is also
accepted for the API key).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError

INFERBOT_HOME = Path(os.environ.get("INFERBOT_HOME", Path.home() / ".inferbot"))
CONFIG_FILENAME = "inferbot.conf"

TRUE_VALUES = {"1", "true", "yes", "y", "on"}
FALSE_VALUES = {"0", "false", "no", "n", "off"}


@dataclass
class Settings:
    fal_api_key: str
    billing_enabled: bool = True
    webhook_enabled: bool = False
    webhook_url: str = ""
    webhook_api_key: str = ""
    debug: bool = False
    home: Path = INFERBOT_HOME
    db_path: Path = INFERBOT_HOME / "ledger.db"
    log_dir: Path = INFERBOT_HOME / "logs"
    bridge_url: str = "http://127.0.0.1:7777"
    bridge_token: str = ""
    bridge_poll: bool = True
    listen_host: str = "127.0.0.1"
    listen_port: int = 8088
    cors_origins: str = ""
    fal_base_url: str = "https://queue.fal.run/fal-ai"
    rate_source_url: str = "https://api.coingecko.com/api/v3/simple/price"
    rate_coin_id: str = "decred"
    rate_unit: str = "DCR"
    rate_ttl_seconds: float = 300.0
    atoms_per_unit: int = 100_000_000
    poll_interval: float = 2.0
    job_timeout_seconds: float = 1800.0
    max_concurrent_jobs: int = 64
    max_jobs_per_user: int = 0
    inline_image_limit: int = 1024 * 1024
    extra: Dict[str, str] = field(default_factory=dict)


def parse_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return default


def read_config_file(path: Path) -> Dict[str, str]:
    values: Dict[str, str] = {}
    if not path.exists():
        return values
    for line in path.read_text().splitlines():
        if not line or line.strip().startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip().lower()] = value.strip()
    return values


def _normalise_key(key: str) -> str:
    # The chat bot config historically used run-together keys (falapikey, billingenabled).
    legacy = {
        "falapikey": "fal_api_key",
        "billingenabled": "billing_enabled",
        "webhookenabled": "webhook_enabled",
        "webhookurl": "webhook_url",
        "webhookapikey": "webhook_api_key",
    }
    key = key.strip().lower()
    return legacy.get(key, key)


def load_settings(
    home: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Settings:
    """Build :class:`Settings` from the config file, environment and overrides."""

    env = os.environ if environ is None else environ
    root = Path(home or env.get("INFERBOT_HOME") or INFERBOT_HOME).expanduser()
    raw: Dict[str, Any] = {}
    for key, value in read_config_file(root / CONFIG_FILENAME).items():
        raw[_normalise_key(key)] = value
    for key, value in env.items():
        if key.startswith("INFERBOT_") and key != "INFERBOT_HOME":
            raw[_normalise_key(key[len("INFERBOT_"):])] = value
    if env.get("FAL_API_KEY") and not raw.get("fal_api_key"):
        raw["fal_api_key"] = env["FAL_API_KEY"]
    raw.update({_normalise_key(k): v for k, v in (overrides or {}).items()})

    api_key = str(raw.pop("fal_api_key", "") or "").strip()
    if not api_key:
        raise ConfigError(f"fal_api_key is required (set it in {root / CONFIG_FILENAME} or FAL_API_KEY)")

    known = {f.name: f for f in fields(Settings)}
    settings = Settings(
        fal_api_key=api_key,
        home=root,
        db_path=root / "ledger.db",
        log_dir=root / "logs",
    )
    extra: Dict[str, str] = {}
    for key, value in raw.items():
        if key not in known or key in {"extra", "home"}:
            extra[key] = str(value)
            continue
        current = getattr(settings, key)
        try:
            if isinstance(current, bool):
                converted: Any = parse_bool(value, current)
            elif isinstance(current, int):
                converted = int(str(value).replace("_", ""))
            elif isinstance(current, float):
                converted = float(value)
            elif isinstance(current, Path):
                converted = Path(str(value)).expanduser()
            else:
                converted = str(value).strip()
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for {key}: {value!r}") from exc
        setattr(settings, key, converted)
    settings.extra = extra

    if settings.webhook_enabled and not (settings.webhook_url and settings.webhook_api_key):
        settings.webhook_enabled = False
    if settings.atoms_per_unit <= 0:
        raise ConfigError("atoms_per_unit must be positive")
    if settings.max_concurrent_jobs <= 0:
        raise ConfigError("max_concurrent_jobs must be positive")
    return settings


def ensure_directories(settings: Settings) -> None:
    for directory in (settings.home, settings.log_dir, settings.db_path.parent):
        directory.mkdir(parents=True, exist_ok=True)


__all__ = ["Settings", "load_settings", "parse_bool", "read_config_file", "ensure_directories"]
