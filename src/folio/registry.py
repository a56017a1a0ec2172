import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .config import env_value, load_environment
from .errors import InvalidFallbackIndex, NoProviderConfigured


class ProviderId(str, Enum):
    MISTRAL = "mistral"
    OPENAI = "openai"
    GOOGLE = "google"
    OPENROUTER = "openrouter"
    ANTHROPIC = "anthropic"
    OPENAI_COMPATIBLE = "openai-compatible"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: object) -> "ProviderId | None":
        if isinstance(value, ProviderId):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip())
        except ValueError:
            return None


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    credential: str
    models: tuple[str, ...]
    base_url: str | None = None
    max_tokens: int = 4000
    temperature: float = 0.7
    fallback_successor: ProviderId | None = None

    def __post_init__(self) -> None:
        if not self.models:
            raise ValueError(f"Provider '{self.name}' must declare at least one model")

    @property
    def has_credential(self) -> bool:
        return bool(self.credential.strip())

    @property
    def default_model(self) -> str:
        return self.models[0]


@dataclass(frozen=True)
class _CatalogEntry:
    name: str
    models: tuple[str, ...]
    credential_env: str
    fallback_successor: ProviderId
    base_url: str | None = None
    base_url_env: str | None = None
    model_env: str | None = None


_CATALOG: dict[ProviderId, _CatalogEntry] = {
    ProviderId.MISTRAL: _CatalogEntry(
        name="Mistral AI",
        models=("mistral-large-latest", "mistral-medium", "mistral-small"),
        credential_env="MISTRAL_API_KEY",
        model_env="MISTRAL_MODEL",
        fallback_successor=ProviderId.OPENAI,
    ),
    ProviderId.OPENAI: _CatalogEntry(
        name="OpenAI",
        models=("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo"),
        credential_env="OPENAI_API_KEY",
        model_env="OPENAI_MODEL",
        fallback_successor=ProviderId.GOOGLE,
    ),
    ProviderId.GOOGLE: _CatalogEntry(
        name="Google Gemini",
        models=("gemini-1.5-pro", "gemini-1.5-flash", "gemini-pro"),
        credential_env="GOOGLE_API_KEY",
        model_env="GOOGLE_MODEL",
        fallback_successor=ProviderId.OPENROUTER,
    ),
    ProviderId.OPENROUTER: _CatalogEntry(
        name="OpenRouter",
        models=(
            "anthropic/claude-3.5-sonnet",
            "openai/gpt-4o",
            "google/gemini-pro-1.5",
            "meta-llama/llama-3.2-90b-instruct",
            "mistralai/mistral-large",
        ),
        credential_env="OPENROUTER_API_KEY",
        model_env="OPENROUTER_MODEL",
        base_url="https://openrouter.ai/api/v1",
        fallback_successor=ProviderId.ANTHROPIC,
    ),
    ProviderId.ANTHROPIC: _CatalogEntry(
        name="Anthropic Claude",
        models=("claude-3-5-sonnet-20241022", "claude-3-haiku-20240307"),
        credential_env="ANTHROPIC_API_KEY",
        model_env="ANTHROPIC_MODEL",
        fallback_successor=ProviderId.MISTRAL,
    ),
    ProviderId.OPENAI_COMPATIBLE: _CatalogEntry(
        name="OpenAI-Compatible API",
        models=("gpt-3.5-turbo",),
        credential_env="OPENAI_COMPATIBLE_API_KEY",
        base_url_env="OPENAI_COMPATIBLE_BASE_URL",
        model_env="OPENAI_COMPATIBLE_MODEL",
        fallback_successor=ProviderId.OPENAI,
    ),
    ProviderId.CUSTOM: _CatalogEntry(
        name="Custom OpenAI-Compatible",
        models=("gpt-3.5-turbo",),
        credential_env="CUSTOM_AI_API_KEY",
        base_url_env="CUSTOM_AI_BASE_URL",
        model_env="CUSTOM_AI_MODEL",
        fallback_successor=ProviderId.OPENAI,
    ),
}

PREFERRED_ORDER: tuple[ProviderId, ...] = (
    ProviderId.MISTRAL,
    ProviderId.OPENAI,
    ProviderId.GOOGLE,
    ProviderId.OPENROUTER,
    ProviderId.ANTHROPIC,
    ProviderId.OPENAI_COMPATIBLE,
    ProviderId.CUSTOM,
)

FallbackChain = tuple[tuple[ProviderId, ProviderConfig], ...]


def build_catalog(environ: Mapping[str, str] | None = None) -> dict[ProviderId, ProviderConfig]:
    source = os.environ if environ is None else environ
    catalog: dict[ProviderId, ProviderConfig] = {}
    for provider_id, entry in _CATALOG.items():
        models = list(entry.models)
        model_override = env_value(source, entry.model_env)
        if model_override:
            models = [model_override] + [model for model in models if model != model_override]
        base_url = env_value(source, entry.base_url_env) or entry.base_url
        catalog[provider_id] = ProviderConfig(
            name=entry.name,
            credential=env_value(source, entry.credential_env),
            models=tuple(models),
            base_url=base_url or None,
            fallback_successor=entry.fallback_successor,
        )
    return catalog


class ProviderRegistry:
    """Read-only view over the provider catalog.

    A registry is a snapshot: reloading configuration means building a new
    registry, so ``resolve_chain`` is deterministic for the registry's lifetime.
    """

    def __init__(
        self,
        catalog: Mapping[ProviderId, ProviderConfig],
        *,
        primary: str | None = None,
        fallback_providers: Sequence[str] = (),
    ) -> None:
        self._catalog: dict[ProviderId, ProviderConfig] = dict(catalog)
        self._primary = primary.strip() if primary else None
        self._fallback_providers: tuple[str, ...] = tuple(
            item.strip() for item in fallback_providers if item and item.strip()
        )

    @classmethod
    def from_environment(cls, environ: Mapping[str, str] | None = None) -> "ProviderRegistry":
        env = load_environment(environ)
        return cls(
            build_catalog(environ),
            primary=env.primary_provider,
            fallback_providers=env.fallback_providers,
        )

    @property
    def catalog(self) -> dict[ProviderId, ProviderConfig]:
        return dict(self._catalog)

    @property
    def fallback_providers(self) -> tuple[str, ...]:
        return self._fallback_providers

    def get(self, provider_id: ProviderId | str) -> ProviderConfig | None:
        parsed = ProviderId.parse(provider_id)
        if parsed is None:
            return None
        return self._catalog.get(parsed)

    def list_available(self) -> dict[ProviderId, ProviderConfig]:
        return {
            provider_id: config
            for provider_id, config in self._catalog.items()
            if config.has_credential
        }

    def primary_provider(self) -> tuple[ProviderId, ProviderConfig]:
        available = self.list_available()
        designated = ProviderId.parse(self._primary)
        if designated is not None and designated in available:
            return designated, available[designated]
        for provider_id in PREFERRED_ORDER:
            if provider_id in available:
                return provider_id, available[provider_id]
        for provider_id, config in available.items():
            return provider_id, config
        raise NoProviderConfigured(
            "No AI providers available. Please configure at least one API key."
        )

    def resolve_chain(self, start: ProviderId | str) -> FallbackChain:
        available = self.list_available()
        chain: list[tuple[ProviderId, ProviderConfig]] = []
        visited: set[ProviderId] = set()

        def visit(provider_id: ProviderId | None) -> None:
            if provider_id is None or provider_id in visited:
                return
            config = available.get(provider_id)
            if config is None:
                return
            visited.add(provider_id)
            chain.append((provider_id, config))

        start_id = ProviderId.parse(start)
        visit(start_id)

        for raw in self._fallback_providers:
            visit(ProviderId.parse(raw))

        # Successor links are walked from the starting provider; already listed
        # entries are stepped over, a repeated node or a gap ends the walk.
        walked: set[ProviderId] = set()
        current = start_id
        while current is not None and current not in walked:
            walked.add(current)
            config = self._catalog.get(current)
            if config is None:
                break
            successor = config.fallback_successor
            if successor is None or successor not in available:
                break
            visit(successor)
            current = successor

        for provider_id in available:
            visit(provider_id)

        return tuple(chain)

    def fallback_provider_at(self, index: int) -> str | None:
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise InvalidFallbackIndex(f"fallback index must be a non-negative integer, got {index!r}")
        if index == 0:
            return None
        if index > len(self._fallback_providers):
            raise InvalidFallbackIndex(
                "fallback index {index} exceeds configured fallback providers ({count})".format(
                    index=index,
                    count=len(self._fallback_providers),
                )
            )
        return self._fallback_providers[index - 1]

    def status(self) -> dict[str, Any]:
        try:
            primary_id, primary_config = self.primary_provider()
        except NoProviderConfigured:
            return {
                "primary": None,
                "availableCount": 0,
                "fallbackChain": [],
                "fallbackProviders": list(self._fallback_providers),
            }
        chain = self.resolve_chain(primary_id)
        return {
            "primary": {
                "key": primary_id.value,
                "name": primary_config.name,
                "hasApiKey": primary_config.has_credential,
            },
            "availableCount": len(self.list_available()),
            "fallbackChain": [
                {
                    "key": provider_id.value,
                    "name": config.name,
                    "hasApiKey": config.has_credential,
                }
                for provider_id, config in chain
            ],
            "fallbackProviders": list(self._fallback_providers),
        }
