"""Runtime configuration read from WEBCHAT_* environment variables."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from typing import Optional

from webchat_translator.core.session_policy import PolicyThresholds


logger = logging.getLogger(__name__)


def _parse_env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        logger.warning("Invalid env %s=%r, fallback to %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning(
            "Invalid env %s=%r (expected >= %s), fallback to %s",
            name,
            raw,
            minimum,
            default,
        )
        return default
    return value


def _parse_env_float(name: str, default: float, minimum: Optional[float] = None) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        logger.warning("Invalid env %s=%r, fallback to %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning(
            "Invalid env %s=%r (expected >= %s), fallback to %s",
            name,
            raw,
            minimum,
            default,
        )
        return default
    return value


def _parse_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = str(raw).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    logger.warning("Invalid env %s=%r, fallback to %s", name, raw, default)
    return default


def _parse_env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = str(raw).strip()
    return normalized if normalized else default


def _default_base_dir() -> str:
    return os.path.join(os.path.expanduser("~"), ".webchat-translator")


@dataclass
class RuntimeConfig:
    base_dir: str = field(default_factory=lambda: _parse_env_str("WEBCHAT_HOME", _default_base_dir()))
    debug_port: int = field(default_factory=lambda: _parse_env_int("WEBCHAT_DEBUG_PORT", 9333, minimum=1))
    start_url: str = field(
        default_factory=lambda: _parse_env_str("WEBCHAT_START_URL", "https://gemini.google.com/app")
    )
    headless: bool = field(default_factory=lambda: _parse_env_bool("WEBCHAT_HEADLESS", False))
    poll_interval: float = field(
        default_factory=lambda: _parse_env_float("WEBCHAT_POLL_INTERVAL", 1.0, minimum=0.05)
    )
    response_deadline: float = field(
        default_factory=lambda: _parse_env_float("WEBCHAT_RESPONSE_TIMEOUT", 180.0, minimum=1.0)
    )
    stability_samples: int = field(
        default_factory=lambda: _parse_env_int("WEBCHAT_STABILITY_SAMPLES", 3, minimum=1)
    )
    input_window: float = field(
        default_factory=lambda: _parse_env_float("WEBCHAT_INPUT_WINDOW", 10.0, minimum=0.1)
    )
    send_window: float = field(
        default_factory=lambda: _parse_env_float("WEBCHAT_SEND_WINDOW", 10.0, minimum=0.1)
    )
    target_lang: str = field(default_factory=lambda: _parse_env_str("WEBCHAT_TARGET_LANG", "Korean"))
    style: str = field(default_factory=lambda: _parse_env_str("WEBCHAT_STYLE", "natural"))
    api_host: str = field(default_factory=lambda: _parse_env_str("WEBCHAT_API_HOST", "127.0.0.1"))
    api_port: int = field(default_factory=lambda: _parse_env_int("WEBCHAT_API_PORT", 8765, minimum=1))
    http_base_url: str = field(default_factory=lambda: _parse_env_str("WEBCHAT_HTTP_BASE_URL", ""))
    http_model: str = field(default_factory=lambda: _parse_env_str("WEBCHAT_HTTP_MODEL", ""))
    http_api_key: str = field(default_factory=lambda: _parse_env_str("WEBCHAT_HTTP_API_KEY", ""))

    @property
    def profiles_dir(self) -> str:
        return os.path.join(self.base_dir, "profiles")

    def policy_thresholds(self) -> PolicyThresholds:
        return PolicyThresholds(
            max_consecutive_errors=_parse_env_int("WEBCHAT_RESET_AFTER_ERRORS", 2, minimum=1),
            max_consecutive_successes=_parse_env_int("WEBCHAT_RESET_AFTER_SUCCESSES", 20, minimum=1),
            latency_spike_ratio=_parse_env_float("WEBCHAT_LATENCY_SPIKE_RATIO", 1.5, minimum=1.0),
            latency_spike_floor_ms=_parse_env_float("WEBCHAT_LATENCY_SPIKE_FLOOR_MS", 3000.0, minimum=0),
            latency_hard_limit_ms=_parse_env_float("WEBCHAT_LATENCY_HARD_LIMIT_MS", 10000.0, minimum=0),
        )
