from __future__ import annotations

import time

import httpx


def request_timeout(read_seconds: float) -> httpx.Timeout:
    return httpx.Timeout(connect=5.0, read=read_seconds, write=5.0, pool=5.0)


async def fetch(
    client: httpx.AsyncClient,
    *,
    url: str,
    user_agent: str,
    params: dict[str, str] | None = None,
    extra_headers: dict[str, str] | None = None,
    read_timeout_seconds: float = 15.0,
) -> tuple[int, bytes | None, int]:
    headers = {
        "User-Agent": user_agent,
        "Accept": "application/json, application/geo+json, */*",
    }
    if extra_headers:
        headers.update(extra_headers)

    started = time.perf_counter()
    response = await client.get(
        url,
        params=params,
        headers=headers,
        timeout=request_timeout(read_timeout_seconds),
    )
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    return (
        response.status_code,
        (response.content if response.status_code == 200 else None),
        elapsed_ms,
    )
