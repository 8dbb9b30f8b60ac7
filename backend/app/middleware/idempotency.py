"""
Idempotency stage — dedupes POST/PUT/PATCH and replays stored responses.

Key resolution, first match wins:
  1. Idempotency-Key header
  2. "idempotency_key" field of a JSON object body
  3. auto_<sha256> over {method, url, body, user id or "guest", client ip}

The derived key (3) is best-effort: it only collapses byte-identical
retries from the same caller. Clients that need real exactly-once
semantics must send their own key.

Only JSON (and empty) bodies are ever read here. Anything else, such as a
multipart CSV upload, is left for the endpoint to stream, so without an
Idempotency-Key header those requests are not deduplicated.

Concurrency: before running the handler the request takes an in-flight
lock with the cache's atomic add(). A second request with the same key
waits, polling the store, and replays the first one's response once it is
stored. If the first request ends without storing anything (non-2xx or
an exception) the waiter takes the lock and runs the handler itself. If
the wait runs out the waiter gets 409.

Failure policy: if the store or the lock cannot be read, the request is
rejected with 503 rather than risking a duplicate side effect. A store
write failure after the handler already succeeded is logged and the
fresh response is returned.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from app.auth.principal import client_address, principal_from_request
from app.core.database import utcnow
from app.middleware.pipeline import Continue, RequestStage, ShortCircuit, StageResult
from app.services.cache import CacheUnavailableError, ExpiringCache
from app.services.idempotency import (
    IdempotencyStore,
    IdempotencyStoreUnavailable,
    StoredResponse,
)

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH"})
KEY_HEADER = "Idempotency-Key"
KEY_BODY_FIELD = "idempotency_key"
REPLAYED_HEADER = "Idempotency-Replayed"


@dataclass(frozen=True, slots=True)
class _Claim:
    key: str
    lock_key: str


def _canonical(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def _is_json(request: Request) -> bool:
    return "json" in request.headers.get("content-type", "")


def _has_no_body(request: Request) -> bool:
    return request.headers.get("content-length") == "0"


def _json_body(request: Request, body: bytes) -> Any | None:
    if not body or not _is_json(request):
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def explicit_key(request: Request, body: bytes) -> str | None:
    key = request.headers.get(KEY_HEADER, "").strip()
    if key:
        return key
    parsed = _json_body(request, body)
    if isinstance(parsed, dict):
        candidate = parsed.get(KEY_BODY_FIELD)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def derive_key(request: Request, body: bytes) -> str:
    parsed = _json_body(request, body)
    principal = principal_from_request(request)
    data = {
        "method": request.method,
        "url": str(request.url),
        # Bodies that are not valid JSON are folded in by digest.
        "body": parsed if parsed is not None else hashlib.sha256(body).hexdigest(),
        "user_id": principal.user_id if principal else "guest",
        "ip": client_address(request),
    }
    return "auto_" + hashlib.sha256(_canonical(data).encode("utf-8")).hexdigest()


def replay_response(stored: StoredResponse) -> Response:
    headers = {REPLAYED_HEADER: "true"}
    if stored.content_type:
        headers["content-type"] = stored.content_type
    return Response(content=stored.body, status_code=stored.status_code, headers=headers)


def _unavailable() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Idempotency store unavailable. Please retry later."},
    )


class IdempotencyStage(RequestStage):
    def __init__(
        self,
        store: IdempotencyStore,
        cache: ExpiringCache,
        *,
        ttl_seconds: float,
        lock_seconds: float,
        wait_seconds: float,
        poll_interval: float,
        max_key_length: int,
    ) -> None:
        self._store = store
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._lock_seconds = lock_seconds
        self._wait_seconds = wait_seconds
        self._poll_interval = poll_interval
        self._max_key_length = max_key_length

    async def enter(self, request: Request) -> StageResult:
        if request.method not in MUTATING_METHODS:
            return Continue()

        readable = _is_json(request) or _has_no_body(request)
        body = await request.body() if readable else b""
        key = explicit_key(request, body)
        if key is None:
            if not readable:
                logger.debug("No idempotency key for streamed %s %s", request.method, request.url.path)
                return Continue()
            key = derive_key(request, body)
        elif len(key) > self._max_key_length:
            return ShortCircuit(
                JSONResponse(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    content={
                        "detail": f"Idempotency key too long (max {self._max_key_length} chars)"
                    },
                )
            )

        try:
            return await self._claim_or_replay(key)
        except (IdempotencyStoreUnavailable, CacheUnavailableError):
            logger.error("Idempotency check failed for %s %s", request.method, request.url.path)
            return ShortCircuit(_unavailable())

    async def _claim_or_replay(self, key: str) -> StageResult:
        lock_key = f"idempotency_lock:{key}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait_seconds

        while True:
            stored = await self._store.lookup(key)
            if stored is not None:
                logger.info("Replaying stored response for key %s", key[:24])
                return ShortCircuit(replay_response(stored))

            if await self._cache.add(lock_key, {"locked_at": utcnow().isoformat()}, self._lock_seconds):
                # The previous holder may have stored right before releasing.
                stored = await self._store.lookup(key)
                if stored is not None:
                    await self._release(lock_key)
                    return ShortCircuit(replay_response(stored))
                return Continue(_Claim(key, lock_key))

            if loop.time() >= deadline:
                logger.warning("Gave up waiting for in-flight request with key %s", key[:24])
                return ShortCircuit(
                    JSONResponse(
                        status_code=status.HTTP_409_CONFLICT,
                        content={"detail": "A request with this idempotency key is still in progress."},
                    )
                )
            await asyncio.sleep(self._poll_interval)

    async def exit(self, request: Request, state: Any, response: Response | None) -> None:
        if not isinstance(state, _Claim):
            return
        try:
            if response is not None and 200 <= response.status_code < 300:
                await self._remember(state.key, response)
        finally:
            await self._release(state.lock_key)

    async def _remember(self, key: str, response: Response) -> None:
        body = getattr(response, "body", None)
        if body is None:
            # Streaming responses cannot be snapshotted.
            logger.debug("Not caching streaming response for key %s", key[:24])
            return
        snapshot = StoredResponse(
            status_code=response.status_code,
            body=bytes(body),
            content_type=response.headers.get("content-type"),
        )
        try:
            await self._store.store(key, snapshot, self._ttl_seconds)
        except IdempotencyStoreUnavailable:
            logger.error("Could not store response for idempotency key %s", key[:24])

    async def _release(self, lock_key: str) -> None:
        try:
            await self._cache.delete(lock_key)
        except CacheUnavailableError:
            logger.warning("Could not release %s; it will expire on its own", lock_key)
