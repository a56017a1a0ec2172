import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_CONFIG_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config")
DEFAULT_SITE_URL = "http://localhost:3000"
DEFAULT_SITE_TITLE = "Portfolio Assistant"
DEFAULT_PROVIDER_TIMEOUT = 60.0
DEFAULT_MAX_STEPS = 2


def _env_var_as_float(environ: Mapping[str, str], name: str, *, default: float) -> float:
    raw = environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _env_var_as_int(environ: Mapping[str, str], name: str, *, default: int) -> int:
    raw = environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value >= 1 else default


def _parse_env_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def env_value(environ: Mapping[str, str], name: str | None) -> str:
    if not name:
        return ""
    raw = environ.get(name)
    if raw is None:
        return ""
    return raw.strip()


@dataclass(frozen=True)
class EnvironmentConfig:
    primary_provider: str | None
    fallback_providers: tuple[str, ...]
    site_url: str
    site_title: str
    provider_timeout: float
    max_steps: int
    allowed_origins: tuple[str, ...]
    config_dir: str


def load_environment(environ: Mapping[str, str] | None = None) -> EnvironmentConfig:
    source = os.environ if environ is None else environ
    return EnvironmentConfig(
        primary_provider=env_value(source, "AI_PRIMARY_PROVIDER") or None,
        fallback_providers=tuple(_parse_env_list(source.get("AI_FALLBACK_PROVIDERS"))),
        site_url=env_value(source, "SITE_URL") or DEFAULT_SITE_URL,
        site_title=env_value(source, "SITE_TITLE") or DEFAULT_SITE_TITLE,
        provider_timeout=_env_var_as_float(
            source, "FOLIO_PROVIDER_TIMEOUT_SECONDS", default=DEFAULT_PROVIDER_TIMEOUT
        ),
        max_steps=_env_var_as_int(source, "FOLIO_MAX_STEPS", default=DEFAULT_MAX_STEPS),
        allowed_origins=tuple(_parse_env_list(source.get("FOLIO_CORS_ALLOW_ORIGINS"))),
        config_dir=env_value(source, "FOLIO_CONFIG_DIR") or DEFAULT_CONFIG_DIR,
    )
