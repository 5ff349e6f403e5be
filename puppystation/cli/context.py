"""CLI helpers — bridges sync typer commands to the async station code."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

import httpx

from puppystation.config import settings


def default_url() -> str:
    return f"http://{settings.host}:{settings.port}"


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)


def api_call(url: str, method: str, path: str, **kwargs: Any) -> Any:
    """One request against a running station. Raises httpx.HTTPStatusError on 4xx/5xx."""
    with httpx.Client(base_url=url.rstrip("/"), timeout=10.0) as client:
        resp = client.request(method, path, **kwargs)
        resp.raise_for_status()
        return resp.json()


def error_message(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            return f"{exc.response.status_code}: {exc.response.json().get('error', exc.response.text)}"
        except ValueError:
            return f"{exc.response.status_code}: {exc.response.text}"
    return str(exc)
