# mlxbox/services/endpoint_scanner.py
"""
Discovery of HTTP services already listening on localhost.

Every (port, path) pair is probed concurrently with a short timeout.
Any answer in the 200-499 range counts as a live service; its body is
classified into a coarse signature and, where it names a known model
family, a suggested model id.

The scanner never raises: unreachable ports and transport errors are
simply absent from the result.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

import httpx

from mlxbox.config.settings import AppSettings
from mlxbox.models.types import EndpointCandidate

logger = logging.getLogger(__name__)

LOCAL_HOST = "127.0.0.1"

# Ordered: first matching marker wins
_SIGNATURE_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("llama.cpp",), "llama.cpp server"),
    (("ollama",), "ollama"),
    (("openai", "chat.completions"), "OpenAI-compatible"),
    (("mlx",), "MLX runtime"),
)
SIGNATURE_REACHABLE = "reachable"
SIGNATURE_CUSTOM = "custom local service"

_MODEL_HINT_RULES: tuple[tuple[str, str], ...] = (
    ("llama-3.2", "mlx-community/Llama-3.2-3B-Instruct-4bit"),
    ("mistral", "mlx-community/Mistral-7B-Instruct-v0.3-4bit"),
    ("qwen", "mlx-community/Qwen2.5-7B-Instruct-4bit"),
)

_MAX_BODY_CHARS = 64 * 1024


def detect_signature(body: str) -> str:
    lower = body.lower()
    for markers, signature in _SIGNATURE_RULES:
        if any(marker in lower for marker in markers):
            return signature
    if not body.strip():
        return SIGNATURE_REACHABLE
    return SIGNATURE_CUSTOM


def detect_model_hint(body: str) -> Optional[str]:
    lower = body.lower()
    for marker, model_id in _MODEL_HINT_RULES:
        if marker in lower:
            return model_id
    return None


def _is_live_status(status_code: int) -> bool:
    return 200 <= status_code <= 499


async def _probe(client: httpx.AsyncClient, port: int, path: str) -> Optional[EndpointCandidate]:
    base_url = f"http://{LOCAL_HOST}:{port}"
    try:
        response = await client.get(f"{base_url}{path}")
    except httpx.HTTPError as e:
        logger.debug("Probe %s%s failed: %s", base_url, path, type(e).__name__)
        return None

    if not _is_live_status(response.status_code):
        return None

    body = response.text[:_MAX_BODY_CHARS]
    return EndpointCandidate(
        base_url=base_url,
        probe_path=path,
        status_code=response.status_code,
        signature=detect_signature(body),
        model_hint=detect_model_hint(body),
    )


async def _bounded_probe(
    client: httpx.AsyncClient, port: int, path: str, timeout: float
) -> Optional[EndpointCandidate]:
    # httpx timeouts are per phase; a slow-dripping body needs one overall deadline.
    try:
        return await asyncio.wait_for(_probe(client, port, path), timeout)
    except TimeoutError:
        logger.debug("Probe http://%s:%d%s timed out", LOCAL_HOST, port, path)
        return None


def _dedupe_and_sort(candidates: Iterable[Optional[EndpointCandidate]]) -> list[EndpointCandidate]:
    unique: dict[str, EndpointCandidate] = {}
    for candidate in candidates:
        if candidate is None:
            continue
        unique.setdefault(candidate.id, candidate)
    return sorted(unique.values(), key=lambda c: c.sort_key)


async def scan(
    ports: Optional[Iterable[int]] = None,
    paths: Optional[Iterable[str]] = None,
    timeout_s: Optional[float] = None,
    *,
    settings: Optional[AppSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[EndpointCandidate]:
    """Probe localhost and return live services sorted by (base_url, path)."""
    settings = settings or AppSettings()
    port_list = list(ports if ports is not None else settings.scan_ports)
    path_list = list(paths if paths is not None else settings.scan_paths)
    timeout = settings.probe_timeout_s if timeout_s is None else timeout_s

    if not port_list or not path_list:
        return []

    # Local services only; proxy settings from the environment must not apply.
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        trust_env=False,
        follow_redirects=False,
        transport=transport,
    ) as client:
        tasks = [_bounded_probe(client, port, path, timeout) for port in port_list for path in path_list]
        results = await asyncio.gather(*tasks, return_exceptions=True)

    candidates: list[Optional[EndpointCandidate]] = []
    for result in results:
        if isinstance(result, BaseException):
            logger.debug("Probe raised unexpectedly: %r", result)
            continue
        candidates.append(result)

    found = _dedupe_and_sort(candidates)
    logger.info("Endpoint scan: %d live of %d probes", len(found), len(tasks))
    return found


def scan_localhost(
    ports: Optional[Iterable[int]] = None,
    paths: Optional[Iterable[str]] = None,
    timeout_s: Optional[float] = None,
    *,
    settings: Optional[AppSettings] = None,
) -> list[EndpointCandidate]:
    """Blocking wrapper for callers outside an event loop."""
    return asyncio.run(scan(ports, paths, timeout_s, settings=settings))
