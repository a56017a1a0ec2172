import logging
import os
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Literal

from typing_extensions import TypedDict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .config import EnvironmentConfig, load_environment
from .errors import InvalidInput
from .framing import STREAM_HEADER, STREAM_HEADER_VALUE, STREAM_MEDIA_TYPE
from .handler import ChatHandler, error_response
from .orchestrator import FallbackOrchestrator, log_request_event
from .portfolio import PORTFOLIO_FILENAME, generate_system_prompt, load_portfolio
from .registry import ProviderRegistry
from .tools import ToolSet, build_portfolio_tools

logger = logging.getLogger(__name__)

app = FastAPI(title="folio")

DEFAULT_SYSTEM_PROMPT = (
    "You are the assistant of a personal portfolio website. "
    "Answer questions about the portfolio owner briefly and warmly."
)


class _ModelEntry(TypedDict):
    provider: str
    name: str
    defaultModel: str
    models: list[str]


class _ModelListResponse(TypedDict):
    object: Literal["list"]
    data: list[_ModelEntry]


def _load_prompt_and_tools(config_dir: str) -> tuple[str, ToolSet | None]:
    path = os.path.join(config_dir, PORTFOLIO_FILENAME)
    if not os.path.exists(path):
        logger.warning("portfolio configuration not found path=%s", path)
        return DEFAULT_SYSTEM_PROMPT, None
    portfolio = load_portfolio(path)
    return generate_system_prompt(portfolio), build_portfolio_tools(portfolio)


env: EnvironmentConfig
registry: ProviderRegistry
orchestrator: FallbackOrchestrator
chat_handler: ChatHandler


def reload_configuration(environ: Mapping[str, str] | None = None) -> None:
    global env, registry, orchestrator, chat_handler
    new_env = load_environment(environ)
    new_registry = ProviderRegistry.from_environment(environ)
    new_orchestrator = FallbackOrchestrator(
        new_registry,
        timeout=new_env.provider_timeout,
        site_url=new_env.site_url,
        site_title=new_env.site_title,
    )
    system_prompt, tools = _load_prompt_and_tools(new_env.config_dir)
    env = new_env
    registry = new_registry
    orchestrator = new_orchestrator
    chat_handler = ChatHandler(
        new_orchestrator,
        new_registry,
        tools,
        system_prompt,
        max_steps=new_env.max_steps,
    )
    available = [provider_id.value for provider_id in new_registry.list_available()]
    logger.info(
        "configuration loaded providers=%s fallback=%s",
        ",".join(available) or "-",
        ",".join(new_registry.fallback_providers) or "-",
    )


reload_configuration()

if env.allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(env.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _make_response_headers(*, req_id: str, provider: str | None, attempts: int) -> dict[str, str]:
    fallback_attempts = max(attempts - 1, 0)
    return {
        "x-folio-request-id": req_id,
        "x-folio-provider": provider or "unknown",
        "x-folio-fallback-attempts": str(fallback_attempts),
    }


@app.post("/api/chat")
async def chat(req: Request):
    req_id = str(uuid.uuid4())
    try:
        try:
            payload: Any = await req.json()
        except ValueError as exc:
            raise InvalidInput("request body is not valid JSON") from exc
        turn = await chat_handler.prepare(payload, req_id=req_id)
    except Exception as exc:
        status, body = error_response(exc)
        provider = getattr(exc, "provider", None)
        attempts = getattr(exc, "attempts", 0)
        log_request_event(
            logging.ERROR if status >= 500 else logging.WARNING,
            event="chat failure",
            req_id=req_id,
            provider=provider,
            attempts=attempts,
            detail=getattr(exc, "message", None) or str(exc) or type(exc).__name__,
        )
        headers = _make_response_headers(req_id=req_id, provider=provider, attempts=attempts)
        return JSONResponse(body, status_code=status, headers=headers)

    headers = _make_response_headers(req_id=req_id, provider=turn.provider, attempts=turn.attempts)
    headers[STREAM_HEADER] = STREAM_HEADER_VALUE
    return StreamingResponse(turn.frames(), media_type=STREAM_MEDIA_TYPE, headers=headers)


@app.get("/api/health")
async def health() -> dict[str, Any]:
    status = registry.status()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "providers": status,
    }


@app.get("/api/models")
async def list_models() -> _ModelListResponse:
    models: list[_ModelEntry] = []
    for provider_id, config in registry.list_available().items():
        entry: _ModelEntry = {
            "provider": provider_id.value,
            "name": config.name,
            "defaultModel": config.default_model,
            "models": list(config.models),
        }
        models.append(entry)
    payload: _ModelListResponse = {"object": "list", "data": models}
    return payload
