"""Outbound marketplace calls with credential attach, signing and retry.

``SignedRequestExecutor.execute(db, account, method, path, query, body)`` is the
only way services talk to a marketplace resource endpoint:

1. obtain a valid access token for the account (refreshing if needed);
2. attach it the way the marketplace expects (``auth_headers``);
3. let the subclass sign the final request (``sign``), SP-API only;
4. send, retrying 429 / 5xx / transport errors up to ``MAX_ATTEMPTS`` in total.
   A numeric ``Retry-After`` wins; otherwise the wait grows 2s, 4s, capped at 5s;
5. any other non-2xx surfaces as ``ProviderRejected``.

Retries re-send the identical request. Writes that the marketplace can
de-duplicate should carry their own idempotency key in the body.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import httpx
from sqlalchemy.orm import Session
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from channel_sync.models_sqlalchemy.models import ChannelAccount
from channel_sync.services.aws_sigv4 import canonical_query_string
from channel_sync.services.errors import (
    ProviderError,
    ProviderRateLimited,
    ProviderRejected,
    ProviderTransientFailure,
)
from channel_sync.services.token_lifecycle import TokenManager, get_token_manager
from channel_sync.utils.logger import channel_call_logger, logger


MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 2
BACKOFF_CAP_SECONDS = 5
REQUEST_TIMEOUT_SECONDS = 30.0

QueryValue = Any
Query = Optional[Mapping[str, QueryValue]]

_exponential = wait_exponential(multiplier=BACKOFF_BASE_SECONDS, max=BACKOFF_CAP_SECONDS)


def backoff_wait(retry_state) -> float:
    """Seconds to wait before the next attempt.

    Honors the provider's ``Retry-After`` when one came back with the failed
    response, otherwise 2s, 4s, ... capped at 5s.
    """
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        return float(retry_after)
    return _exponential(retry_state)


def parse_body(text: str) -> Any:
    """JSON when the body looks like JSON, the raw text otherwise."""
    if text.startswith("{") or text.startswith("["):
        try:
            return json.loads(text)
        except ValueError:
            return text
    return text


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value >= 0 else None


def _error_message(status_code: int, payload: Any) -> str:
    detail: Any = payload
    if isinstance(payload, dict):
        detail = payload.get("message") or payload.get("errors") or payload
    if not isinstance(detail, str):
        detail = json.dumps(detail, default=str)
    return f"HTTP {status_code}: {detail[:1000]}"


def query_pairs(query: Query) -> List[Tuple[str, str]]:
    """Flatten a query mapping; ``None`` values are dropped, lists comma-joined."""
    pairs: List[Tuple[str, str]] = []
    for key, value in (query or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ",".join(str(v) for v in value)
        elif isinstance(value, bool):
            value = "true" if value else "false"
        pairs.append((key, str(value)))
    return pairs


@dataclass
class ProviderResponse:
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    data: Any = None


class SignedRequestExecutor:
    channel: str = ""

    def __init__(
        self,
        token_manager: Optional[TokenManager] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self._token_manager = token_manager
        self._transport = transport
        self._sleep = sleep
        self._max_attempts = max_attempts

    @property
    def token_manager(self) -> TokenManager:
        if self._token_manager is None:
            self._token_manager = get_token_manager(self.channel)
        return self._token_manager

    def base_url(self, account: ChannelAccount) -> str:
        raise NotImplementedError

    def auth_headers(self, account: ChannelAccount, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def sign(
        self,
        account: ChannelAccount,
        method: str,
        url: httpx.URL,
        headers: Dict[str, str],
        body: bytes,
    ) -> Dict[str, str]:
        return headers

    async def execute(
        self,
        db: Session,
        account: ChannelAccount,
        method: str,
        path: str,
        query: Query = None,
        body: Any = None,
    ) -> Any:
        response = await self.send(db, account, method, path, query=query, body=body)
        return response.data

    async def send(
        self,
        db: Session,
        account: ChannelAccount,
        method: str,
        path: str,
        query: Query = None,
        body: Any = None,
    ) -> ProviderResponse:
        access_token = await self.token_manager.acquire_valid_credential(db, account)
        method = method.upper()
        url = self._build_url(account, path, query)
        payload = b"" if body is None else (body if isinstance(body, bytes) else json.dumps(body).encode("utf-8"))

        headers = {"Accept": "application/json"}
        if payload:
            headers["Content-Type"] = "application/json"
        headers.update(self.auth_headers(account, access_token))

        result: Optional[ProviderResponse] = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=backoff_wait,
            retry=retry_if_exception_type((ProviderRateLimited, ProviderTransientFailure)),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                signed = self.sign(account, method, url, dict(headers), payload)
                result = await self._send_once(
                    method, url, signed, payload, attempt.retry_state.attempt_number
                )
        return result

    def _build_url(self, account: ChannelAccount, path: str, query: Query) -> httpx.URL:
        if path.startswith("http://") or path.startswith("https://"):
            base = path
        else:
            base = f"{self.base_url(account).rstrip('/')}/{path.lstrip('/')}"
        pairs = query_pairs(query)
        if not pairs:
            return httpx.URL(base)
        separator = "&" if "?" in base else "?"
        return httpx.URL(f"{base}{separator}{canonical_query_string(pairs)}")

    async def _send_once(
        self,
        method: str,
        url: httpx.URL,
        headers: Dict[str, str],
        payload: bytes,
        attempt_number: int,
    ) -> ProviderResponse:
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS, transport=self._transport) as client:
                response = await client.request(method, url, headers=headers, content=payload or None)
        except httpx.TransportError as exc:
            channel_call_logger.log_call(
                self.channel, method, str(url), attempt=attempt_number, headers=headers, error=str(exc),
            )
            raise ProviderTransientFailure(0, None, f"{self.channel} transport error: {exc}") from exc

        duration_ms = (time.monotonic() - started) * 1000
        data = parse_body(response.text)
        status = response.status_code

        if 200 <= status < 300:
            channel_call_logger.log_call(
                self.channel, method, str(url),
                status_code=status, attempt=attempt_number, duration_ms=duration_ms,
            )
            return ProviderResponse(status_code=status, headers=response.headers, data=data)

        message = _error_message(status, data)
        channel_call_logger.log_call(
            self.channel, method, str(url),
            status_code=status, attempt=attempt_number, duration_ms=duration_ms, error=message,
        )
        if status == 429:
            raise ProviderRateLimited(status, data, message, retry_after=_retry_after_seconds(response))
        if status >= 500:
            raise ProviderTransientFailure(status, data, message, retry_after=_retry_after_seconds(response))
        raise ProviderRejected(status, data, message)


def is_not_found(exc: ProviderError) -> bool:
    return isinstance(exc, ProviderRejected) and exc.status_code == 404


def log_provider_error(prefix: str, account: ChannelAccount, exc: ProviderError) -> None:
    logger.error(
        "[%s] account=%s status=%s error=%s",
        prefix, account.id, exc.status_code, exc.message,
    )
