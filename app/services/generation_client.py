"""HTTP client for the memo generation backend.

The backend owns question analysis and memo generation. This service only
uses its contracts: submit answer (may emit discoveries), trigger generation
after payment, stream generation events, probe / fetch the artifact.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from app.core.errors import AuthRequired, UpstreamUnavailable
from app.core.logging import get_logger

logger = get_logger(__name__)


class GenerationClient:
    """Async client for the generation backend."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        connect_timeout: float = 10.0,
        request_timeout: float = 30.0,
        probe_timeout: float = 10.0,
        stream_read_timeout: float | None = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {"Accept": "application/json"}
        if api_key:
            self._headers["X-API-Key"] = api_key
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.probe_timeout = probe_timeout
        self.stream_read_timeout = stream_read_timeout
        self._transport = transport

    def _url(self, path: str) -> str:
        return f"{self.base_url}/decision-memo/{path.lstrip('/')}"

    def _timeout(self, total: float) -> httpx.Timeout:
        return httpx.Timeout(total, connect=min(self.connect_timeout, total))

    def _client(self, timeout: httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def submit_answer(self, intake_id: str, question_id: str, answer: Any) -> list[dict]:
        """Forward one answer; returns discoveries the backend emitted for it."""
        try:
            async with self._client(self._timeout(self.request_timeout)) as client:
                resp = await client.post(
                    self._url("submit-answer"),
                    headers=self._headers,
                    json={"intake_id": intake_id, "question_id": question_id, "answer": answer},
                )
                resp.raise_for_status()
                data = resp.json() if resp.content else {}
        except httpx.HTTPError as e:
            logger.warning(f"Backend submit-answer failed for intake {intake_id}: {e}")
            raise UpstreamUnavailable("Generation backend rejected the answer") from e
        return list(data.get("discoveries") or [])

    async def trigger_generation(self, intake_id: str, order_id: str, payment_id: str | None) -> None:
        """Ask the backend to start generating the paid memo."""
        try:
            async with self._client(self._timeout(self.request_timeout)) as client:
                resp = await client.post(
                    self._url(f"{intake_id}/generate"),
                    headers=self._headers,
                    json={"intake_id": intake_id, "order_id": order_id, "payment_id": payment_id},
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Backend generation trigger failed for intake {intake_id}: {e}")
            raise UpstreamUnavailable("Generation backend unavailable") from e
        logger.info(f"Generation triggered for intake {intake_id}")

    @asynccontextmanager
    async def stream_events(
        self, intake_id: str, last_event_id: str | None = None
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """
        Open the upstream SSE connection for ``intake_id``.

        Yields the raw byte iterator. Leaving the context closes the upstream
        response, which is how cancellation reaches the backend.

        Raises:
            UpstreamUnavailable: connection error or non-2xx status; also raised
                while iterating if the connection breaks
            TimeoutError: while iterating, if a read times out
        """
        headers = {
            **self._headers,
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
        }
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id

        timeout = httpx.Timeout(
            connect=self.connect_timeout,
            read=self.stream_read_timeout,
            write=self.connect_timeout,
            pool=self.connect_timeout,
        )
        async with self._client(timeout) as client:
            try:
                request = client.build_request("GET", self._url(f"stream/{intake_id}"), headers=headers)
                resp = await client.send(request, stream=True)
            except httpx.HTTPError as e:
                raise UpstreamUnavailable(f"Backend stream connection failed: {e}") from e
            try:
                if resp.status_code >= 300:
                    raise UpstreamUnavailable(f"Backend stream failed: {resp.status_code}")
                yield _raw_chunks(resp, intake_id)
            finally:
                await resp.aclose()

    async def artifact_exists(self, intake_id: str) -> bool:
        """Cheap existence probe (HEAD, no body transfer)."""
        try:
            async with self._client(self._timeout(self.probe_timeout)) as client:
                resp = await client.head(self._url(f"artifact/{intake_id}"), headers=self._headers)
        except httpx.HTTPError as e:
            logger.debug(f"Artifact probe failed for intake {intake_id}: {e}")
            return False
        return 200 <= resp.status_code < 300

    async def fetch_artifact(self, intake_id: str) -> dict[str, Any]:
        """Fetch the generated memo payload."""
        try:
            async with self._client(self._timeout(self.request_timeout)) as client:
                resp = await client.get(self._url(f"artifact/{intake_id}"), headers=self._headers)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable("Generation backend unavailable") from e

        if resp.status_code == 401:
            raise AuthRequired("Backend requires authentication")
        if resp.status_code >= 300:
            raise UpstreamUnavailable(f"Artifact fetch failed: {resp.status_code}")
        return resp.json()


async def _raw_chunks(resp: httpx.Response, intake_id: str) -> AsyncIterator[bytes]:
    """Raw upstream bytes; mid-stream transport errors become domain errors.

    A read timeout surfaces as ``TimeoutError`` so the relay reports it the
    same way as its own generation ceiling.
    """
    try:
        async for chunk in resp.aiter_raw():
            yield chunk
    except httpx.TimeoutException as e:
        logger.warning(f"Backend stream for intake {intake_id} timed out: {e}")
        raise TimeoutError(f"Backend stream read timed out: {e}") from e
    except httpx.HTTPError as e:
        logger.warning(f"Backend stream for intake {intake_id} interrupted: {e}")
        raise UpstreamUnavailable(f"Backend stream interrupted: {e}") from e
