import asyncio
import io
import json
import sys
from pathlib import Path

import httpx

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import scripts.chat as chat
from src.folio.client import TurnOutcome


def test_render_shows_answer_and_tool_results():
    outcome = TurnOutcome(
        "completed",
        message={
            "role": "assistant",
            "content": "Here you go.",
            "parts": [
                {
                    "type": "tool-invocation",
                    "toolInvocation": {"state": "result", "toolName": "getSkills", "result": "Python"},
                }
            ],
        },
    )

    assert chat._render(outcome) == "Here you go.\n[getSkills]\nPython"


def test_render_shows_notices_for_failed_turns():
    assert chat._render(TurnOutcome("exhausted", notice="All down")) == "! All down"
    assert chat._render(TurnOutcome("duplicate")).startswith("(already sent")


def test_run_talks_to_server_until_eof(provider_transport):
    def server(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/health":
            return httpx.Response(
                200,
                json={"status": "healthy", "providers": {"primary": {"name": "OpenAI"}, "fallbackProviders": []}},
            )
        payload = json.loads(request.content)
        assert payload["messages"][-1] == {"role": "user", "content": "hi"}
        return httpx.Response(
            200,
            content=b'0:"Hello!"\nd:{"finishReason":"stop"}\n',
            headers={"content-type": "text/plain; charset=utf-8", "x-folio-stream": "v1"},
        )

    seen = provider_transport(server)
    stdin = io.StringIO("hi\n\n")
    stdout = io.StringIO()

    exit_code = asyncio.run(chat.run("http://folio.test", 5.0, stdin, stdout))

    assert exit_code == 0
    output = stdout.getvalue()
    assert "connected, primary provider: OpenAI" in output
    assert "Hello!" in output
    assert [request.url.path for request in seen] == ["/api/health", "/api/chat"]
