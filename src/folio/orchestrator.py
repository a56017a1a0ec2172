import logging
from collections.abc import Callable, Mapping
from typing import Any, List

from .config import DEFAULT_PROVIDER_TIMEOUT
from .errors import (
    TERMINAL_KINDS,
    AllProvidersExhausted,
    FolioError,
    MisconfiguredProvider,
    NoProviderConfigured,
    ProviderUnavailable,
    RateLimited,
)
from .providers import INVOCATION_MODES, BaseProvider, build
from .registry import ProviderConfig, ProviderId, ProviderRegistry
from .types import BufferedGeneration, GenerationResult, InvocationMode, StreamedGeneration

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., BaseProvider]


def log_request_event(
    level: int,
    *,
    event: str,
    req_id: str | None,
    provider: str | None,
    attempts: int,
    detail: str | None = None,
) -> None:
    provider_value = provider or "unknown"
    message = f"{event} req_id={req_id or '-'} provider={provider_value} attempts={attempts}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


class FallbackOrchestrator:
    """Walks a fallback chain until one provider produces output.

    Attempts are strictly sequential. A provider counts as having succeeded
    once its first stream event (or its complete single-shot body) has
    arrived; failures after that point belong to the consumer.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        adapter_factory: AdapterFactory = build,
        timeout: float = DEFAULT_PROVIDER_TIMEOUT,
        site_url: str | None = None,
        site_title: str | None = None,
        modes: Mapping[ProviderId, InvocationMode] = INVOCATION_MODES,
    ) -> None:
        self.registry = registry
        self._adapter_factory = adapter_factory
        self._timeout = timeout
        self._site_url = site_url
        self._site_title = site_title
        self._modes = dict(modes)

    async def generate(
        self,
        messages: List[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        preferred_provider: ProviderId | str | None = None,
        preferred_model: str | None = None,
        req_id: str | None = None,
    ) -> GenerationResult:
        if preferred_provider is None:
            start, _ = self.registry.primary_provider()
        else:
            start = preferred_provider
        start_id = ProviderId.parse(start)
        chain = self.registry.resolve_chain(start)
        if not chain:
            raise NoProviderConfigured(
                "No AI providers available. Please configure at least one API key."
            )

        attempts = 0
        last_provider: str | None = None
        last_error: str | None = None
        last_failure: FolioError | None = None
        for provider_id, config in chain:
            attempts += 1
            last_provider = provider_id.value
            model_override = preferred_model if provider_id is start_id else None
            try:
                adapter = self._adapter_factory(
                    provider_id,
                    config,
                    model_override,
                    timeout=self._timeout,
                    site_url=self._site_url,
                    site_title=self._site_title,
                )
            except MisconfiguredProvider as exc:
                last_error = exc.message
                last_failure = exc
                log_request_event(
                    logging.WARNING,
                    event="provider misconfigured",
                    req_id=req_id,
                    provider=last_provider,
                    attempts=attempts,
                    detail=last_error,
                )
                continue
            try:
                result = await self._invoke(adapter, provider_id, config, messages, tools)
            except FolioError as exc:
                if exc.kind in TERMINAL_KINDS:
                    log_request_event(
                        logging.ERROR,
                        event=f"provider failed ({exc.kind.value})",
                        req_id=req_id,
                        provider=last_provider,
                        attempts=attempts,
                        detail=exc.message,
                    )
                    raise
                last_error = exc.message
                last_failure = exc
                log_request_event(
                    logging.WARNING,
                    event="provider failed",
                    req_id=req_id,
                    provider=last_provider,
                    attempts=attempts,
                    detail=last_error,
                )
                continue
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                last_failure = None
                log_request_event(
                    logging.WARNING,
                    event="provider failed",
                    req_id=req_id,
                    provider=last_provider,
                    attempts=attempts,
                    detail=last_error,
                )
                continue
            result.attempts = attempts
            log_request_event(
                logging.WARNING if attempts > 1 else logging.INFO,
                event="generation fallback" if attempts > 1 else "generation success",
                req_id=req_id,
                provider=last_provider,
                attempts=attempts,
            )
            return result

        log_request_event(
            logging.ERROR,
            event="generation exhausted",
            req_id=req_id,
            provider=last_provider,
            attempts=attempts,
            detail=last_error,
        )
        if isinstance(last_failure, RateLimited):
            # Every provider was tried; the quota on the last one decides when to retry.
            raise RateLimited(
                last_failure.message,
                provider=last_provider,
                retry_after=last_failure.retry_after,
            )
        raise AllProvidersExhausted(last_provider, last_error, attempts=attempts)

    async def _invoke(
        self,
        adapter: BaseProvider,
        provider_id: ProviderId,
        config: ProviderConfig,
        messages: List[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
    ) -> GenerationResult:
        options: dict[str, Any] = {
            "tools": tools or None,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
        }
        if self._modes[provider_id] == "single":
            response = await adapter.chat(messages, **options)
            return BufferedGeneration.from_response(response, provider=provider_id.value)

        stream_iter = adapter.chat_stream(messages, **options)
        try:
            head = await anext(stream_iter, None)
        except BaseException:
            await stream_iter.aclose()
            raise
        if head is None or head.kind == "finish":
            await stream_iter.aclose()
            raise ProviderUnavailable(
                f"{provider_id.value} returned an empty stream",
                provider=provider_id.value,
                malformed=True,
            )
        return StreamedGeneration(
            stream_iter,
            head=head,
            provider=provider_id.value,
            model=adapter.model,
        )
