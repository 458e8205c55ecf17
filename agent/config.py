"""Runtime configuration for the agent core.

Values come from three layers, lowest priority first:
    1. Built-in defaults (see AgentSettings)
    2. ~/.bubble/.env, then the project .env (python-dotenv)
    3. ~/.bubble/config.yaml, bridged into BUBBLE_* environment variables

load_environment() performs the loading; AgentSettings.from_env() reads
the resulting environment into a frozen settings object.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from agent.providers.registry import COMPATIBLE, NATIVE, resolve_provider_api_key
from bubble_constants import (
    BUBBLE_SEARCH_URL,
    DEEP_THINKING_MODEL,
    DEFAULT_MODEL,
    MAX_LOOPS,
    OPENROUTER_APP_REFERER,
    OPENROUTER_APP_TITLE,
)

logger = logging.getLogger(__name__)


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""
    pass


# config.yaml section -> {key: env var}. These override .env values since
# config.yaml is the documented config path.
_SECTION_ENV_MAP = {
    "agent": {
        "default_model": "BUBBLE_DEFAULT_MODEL",
        "deep_model": "BUBBLE_DEEP_MODEL",
        "max_loops": "BUBBLE_MAX_LOOPS",
        "quota_retries": "BUBBLE_QUOTA_RETRIES",
        "temperature": "BUBBLE_TEMPERATURE",
        "safety_timeout": "BUBBLE_SAFETY_TIMEOUT",
    },
    "search": {
        "endpoint": "BUBBLE_SEARCH_URL",
        "limit": "BUBBLE_SEARCH_LIMIT",
        "timeout": "BUBBLE_SEARCH_TIMEOUT",
    },
    "openrouter": {
        "referer": "BUBBLE_OPENROUTER_REFERER",
        "title": "BUBBLE_OPENROUTER_TITLE",
    },
}


def get_bubble_home() -> Path:
    """Resolve the agent home directory (respects BUBBLE_HOME override)."""
    return Path(os.getenv("BUBBLE_HOME", Path.home() / ".bubble"))


def load_environment(home: Optional[Path] = None) -> Path:
    """Load .env files and bridge config.yaml values into os.environ.

    Returns the home directory that was used.
    """
    home = Path(home) if home else get_bubble_home()

    env_path = home / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    # Also try project .env as fallback
    load_dotenv()

    config_path = home / "config.yaml"
    if not config_path.exists():
        return home

    try:
        with open(config_path, encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not read %s: %s", config_path, e)
        return home

    if not isinstance(cfg, dict):
        logger.warning("Ignoring %s: top level is not a mapping", config_path)
        return home

    # Top-level simple values are a fallback only; they don't override .env
    for key, val in cfg.items():
        if isinstance(val, (str, int, float, bool)) and key not in os.environ:
            os.environ[key] = str(val)

    for section, env_map in _SECTION_ENV_MAP.items():
        section_cfg = cfg.get(section, {})
        if not section_cfg or not isinstance(section_cfg, dict):
            continue
        for cfg_key, env_var in env_map.items():
            if cfg_key in section_cfg:
                os.environ[env_var] = str(section_cfg[cfg_key])

    return home


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigValidationError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigValidationError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class AgentSettings:
    gemini_api_key: str = ""
    openrouter_api_key: str = ""
    default_model: str = DEFAULT_MODEL
    deep_model: str = DEEP_THINKING_MODEL
    max_loops: int = MAX_LOOPS
    quota_retries: int = 3
    temperature: float = 0.7
    search_url: str = BUBBLE_SEARCH_URL
    search_limit: int = 15
    search_timeout: float = 8.0
    safety_timeout: float = 300.0
    openrouter_referer: str = OPENROUTER_APP_REFERER
    openrouter_title: str = OPENROUTER_APP_TITLE

    @classmethod
    def from_env(cls) -> "AgentSettings":
        settings = cls(
            gemini_api_key=resolve_provider_api_key(NATIVE) or "",
            openrouter_api_key=resolve_provider_api_key(COMPATIBLE) or "",
            default_model=os.getenv("BUBBLE_DEFAULT_MODEL") or DEFAULT_MODEL,
            deep_model=os.getenv("BUBBLE_DEEP_MODEL") or DEEP_THINKING_MODEL,
            max_loops=_int_env("BUBBLE_MAX_LOOPS", MAX_LOOPS),
            quota_retries=_int_env("BUBBLE_QUOTA_RETRIES", 3),
            temperature=_float_env("BUBBLE_TEMPERATURE", 0.7),
            search_url=os.getenv("BUBBLE_SEARCH_URL") or BUBBLE_SEARCH_URL,
            search_limit=_int_env("BUBBLE_SEARCH_LIMIT", 15),
            search_timeout=_float_env("BUBBLE_SEARCH_TIMEOUT", 8.0),
            safety_timeout=_float_env("BUBBLE_SAFETY_TIMEOUT", 300.0),
            openrouter_referer=os.getenv("BUBBLE_OPENROUTER_REFERER") or OPENROUTER_APP_REFERER,
            openrouter_title=os.getenv("BUBBLE_OPENROUTER_TITLE") or OPENROUTER_APP_TITLE,
        )
        if not 1 <= settings.max_loops <= MAX_LOOPS:
            raise ConfigValidationError(
                f"BUBBLE_MAX_LOOPS must be between 1 and {MAX_LOOPS}, got {settings.max_loops}"
            )
        if settings.quota_retries < 0:
            raise ConfigValidationError("BUBBLE_QUOTA_RETRIES must not be negative")
        return settings

    @property
    def default_thinking_mode(self) -> str:
        """'fast' when a native key is configured, otherwise 'instant'."""
        return "fast" if self.gemini_api_key else "instant"
