"""
Pytest configuration and fixtures.

This module provides shared fixtures for all tests: fake HTTP
transports for llama-server, and a tiny executable that stands in for
the llama-server binary.
"""

import os
import sys
import json
import stat
import asyncio
import hashlib
from typing import List

import httpx
import pytest

# Keep the real environment from switching components into mock mode
os.environ["LLM_TYPE"] = "LOCAL"


FAKE_SERVER_SCRIPT = """#!{python}
import sys
import time

args = sys.argv[1:]
if "--argv-file" in args:
    with open(args[args.index("--argv-file") + 1], "w") as f:
        f.write("\\n".join(args))
print("fake llama-server starting", flush=True)
if "--exit-code" in args:
    sys.exit(int(args[args.index("--exit-code") + 1]))
while True:
    time.sleep(0.1)
"""


@pytest.fixture
def fake_server_binary(tmp_path):
    """Create an executable script that behaves like a long-running server."""
    path = tmp_path / "bin" / "llama-server"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(FAKE_SERVER_SCRIPT.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def sse_event(content: str) -> str:
    """Format one streaming chunk the way llama-server does."""
    event = {"choices": [{"delta": {"content": content}}]}
    return "data: " + json.dumps(event, ensure_ascii=False) + "\n\n"


def sse_body(deltas: List[str], done: bool = True) -> bytes:
    body = "".join(sse_event(d) for d in deltas)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode("utf-8")


async def chunked(*chunks: bytes, delay: float = 0.0):
    """Async byte stream yielding the given chunks as separate reads."""
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk


def completion_json(text: str) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "local",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}
        ],
        "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}
    }


def make_llama_handler(deltas: List[str], requests: list = None):
    """Fake llama-server chat endpoint answering both buffered and streaming calls."""

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if requests is not None:
            requests.append(payload)
        if payload.get("stream"):
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=chunked(sse_body(deltas))
            )
        return httpx.Response(200, json=completion_json("".join(deltas)))

    return handler


@pytest.fixture
def llama_requests():
    """Collects JSON payloads seen by the fake llama-server."""
    return []


@pytest.fixture
def llama_http_client(llama_requests):
    """AsyncClient wired to a fake llama-server that answers 'Hello world'."""
    transport = httpx.MockTransport(make_llama_handler(["Hello", " world"], llama_requests))
    return httpx.AsyncClient(transport=transport, base_url="http://127.0.0.1:18777")


def sha256_of(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
