"""Runtime settings and environment overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping

from ..ai.client import ClientSettings
from ..ai.errors import ConfigurationError
from ..ai.prompts import DEFAULT_SYSTEM_PROMPT
from ..utils.logging import redact_secret

__all__ = [
    "Settings",
    "load_settings",
    "DEFAULT_MODEL",
    "PROVIDER_CHOICES",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-5-haiku-latest"
PROVIDER_CHOICES: tuple[str, ...] = ("anthropic", "openai")

_ENV_OVERRIDES: Mapping[str, str] = {
    "PALACECHAT_PROVIDER": "provider",
    "PALACECHAT_API_KEY": "api_key",
    "PALACECHAT_BASE_URL": "base_url",
    "PALACECHAT_MODEL": "model",
    "PALACECHAT_SYSTEM_PROMPT": "system_prompt",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "PALACECHAT_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "PALACECHAT_REQUEST_TIMEOUT": "request_timeout",
    "PALACECHAT_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "PALACECHAT_MAX_OUTPUT_TOKENS": "max_output_tokens",
    "PALACECHAT_MAX_RETRIES": "max_retries",
    "PALACECHAT_MAX_TURNS": "max_turns",
}
_PROVIDER_KEY_ENV: Mapping[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """Configuration for one conversation runtime."""

    provider: str = "anthropic"
    api_key: str = ""
    base_url: str | None = None
    model: str = DEFAULT_MODEL
    max_output_tokens: int = 4000
    temperature: float = 0.7
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_turns: int | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` for the first invalid setting."""

        if self.provider not in PROVIDER_CHOICES:
            raise ConfigurationError(
                f"Unsupported provider {self.provider!r}; expected one of {', '.join(PROVIDER_CHOICES)}",
                setting="provider",
            )
        if not self.api_key.strip():
            env_name = _PROVIDER_KEY_ENV.get(self.provider, "PALACECHAT_API_KEY")
            raise ConfigurationError(
                f"API key not configured; set PALACECHAT_API_KEY or {env_name}",
                setting="api_key",
            )
        if not self.model.strip():
            raise ConfigurationError("Model name must not be empty", setting="model")
        if self.max_output_tokens <= 0:
            raise ConfigurationError("max_output_tokens must be positive", setting="max_output_tokens")
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError("temperature must be between 0 and 2", setting="temperature")
        if self.max_turns is not None and self.max_turns < 1:
            raise ConfigurationError("max_turns must be at least 1 when set", setting="max_turns")
        if self.max_retries < 1:
            raise ConfigurationError("max_retries must be at least 1", setting="max_retries")

    def client_settings(self) -> ClientSettings:
        """Return the explicit transport dependencies derived from these settings."""

        return ClientSettings(
            provider=self.provider,
            api_key=self.api_key.strip(),
            base_url=self.base_url or None,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            default_headers=tuple(sorted(self.default_headers.items())),
            debug_logging=self.debug_logging,
        )

    def redacted(self) -> Dict[str, Any]:
        """Return the settings as a dictionary that is safe to log or print."""

        payload = {item.name: getattr(self, item.name) for item in fields(self)}
        payload["api_key"] = redact_secret(self.api_key)
        payload["default_headers"] = {
            key: redact_secret(value) if key.lower() in {"authorization", "x-api-key"} else value
            for key, value in self.default_headers.items()
        }
        return payload


def load_settings(
    overrides: Mapping[str, Any] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build settings from defaults, environment overrides and runtime overrides.

    Runtime ``overrides`` win over the environment. When no API key is set
    explicitly, the provider's conventional variable (``ANTHROPIC_API_KEY`` or
    ``OPENAI_API_KEY``) is used.
    """

    env = os.environ if environ is None else environ
    settings = _apply_env_overrides(Settings(), env)
    if overrides:
        settings = _apply_overrides(settings, overrides)
    if not settings.api_key:
        fallback = env.get(_PROVIDER_KEY_ENV.get(settings.provider, ""), "")
        if fallback:
            LOGGER.debug("Using %s from the environment", _PROVIDER_KEY_ENV[settings.provider])
            settings = replace(settings, api_key=fallback)
    return settings


def _apply_overrides(
    settings: Settings,
    overrides: Mapping[str, Any],
    *,
    source: str = "runtime",
) -> Settings:
    allowed = {item.name for item in fields(Settings)}
    filtered: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in allowed or value is None:
            continue
        filtered[key] = value
    headers_override = filtered.get("default_headers")
    if isinstance(headers_override, Mapping):
        merged_headers = dict(settings.default_headers)
        merged_headers.update(headers_override)
        filtered["default_headers"] = merged_headers
    if filtered:
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
        settings = replace(settings, **filtered)
    return settings


def _apply_env_overrides(settings: Settings, environ: Mapping[str, str]) -> Settings:
    overrides: Dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None:
            overrides[field_name] = value
    for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None:
            overrides[field_name] = value.strip().lower() in _TRUE_VALUES
    for env_name, field_name in _INT_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = int(value, 10)
        except ValueError:
            LOGGER.warning(
                "Environment override %s=%s is not a valid integer",
                env_name,
                value,
            )
    for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = float(value)
        except ValueError:
            LOGGER.warning(
                "Environment override %s=%s is not a valid float", env_name, value
            )
    if overrides:
        settings = _apply_overrides(settings, overrides, source="environment")
    return settings
