"""
Ollama client for transcript and slide analysis.

Transient failures (timeouts, transport errors, HTTP 429 and 5xx) are retried
with exponential backoff and jitter. Anything else, or running out of
attempts, surfaces as a single DependencyError.
"""

import asyncio
import base64
import json
import logging
import random
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import httpx

from tubelens.config import settings
from tubelens.errors import DependencyError

logger = logging.getLogger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>\s*", flags=re.DOTALL)


def strip_think_tags(text: str) -> str:
    return _THINK_RE.sub("", text).strip()


def classify_error(error: Exception) -> str:
    """Map an exception to a retry category: timeout, transport, rate_limit, server_error, fatal."""
    if isinstance(error, httpx.TimeoutException):
        return "timeout"
    if isinstance(error, httpx.TransportError):
        return "transport"
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return "rate_limit"
        if status >= 500:
            return "server_error"
    return "fatal"


def compute_delay(base_delay: float, attempt: int, jitter: bool = True) -> float:
    """Delay before retry ``attempt`` (0-based)."""
    delay = base_delay * (2 ** attempt)
    if jitter:
        delay *= 0.5 + random.random()  # noqa: S311
    return delay


class LLMClient:
    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.ollama_url).rstrip("/")
        self.model = model or settings.llm_model
        self.timeout = httpx.Timeout(
            connect=10.0,
            read=timeout_seconds or settings.llm_timeout_seconds,
            write=10.0,
            pool=10.0,
        )
        self.max_retries = settings.llm_max_retries if max_retries is None else max_retries
        self.retry_base_delay = settings.llm_retry_base_delay if retry_base_delay is None else retry_base_delay
        self.transport = transport

    def _payload(
        self,
        prompt: str,
        system: str | None,
        schema: dict | None,
        stream: bool,
        images: list[str] | None = None,
    ) -> dict:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        user: dict[str, Any] = {"role": "user", "content": prompt}
        if images:
            user["images"] = images
        messages.append(user)
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": stream,
            "options": {"temperature": 0.3},
        }
        if schema is not None:
            payload["format"] = schema
        return payload

    async def _with_retry(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        attempts = 0
        while True:
            try:
                return await fn()
            except DependencyError:
                raise
            except Exception as exc:
                error_type = classify_error(exc)
                attempts += 1
                if error_type == "fatal" or attempts > self.max_retries:
                    raise DependencyError(
                        f"LLM call failed after {attempts} attempt(s) ({error_type}): {exc}"
                    ) from exc
                delay = compute_delay(self.retry_base_delay, attempts - 1)
                logger.warning(
                    "LLM %s (attempt %d/%d), retrying in %.1fs",
                    error_type, attempts, self.max_retries, delay,
                )
                await asyncio.sleep(delay)

    async def generate(
        self,
        prompt: str,
        system: str | None = None,
        schema: dict | None = None,
        images: list[str] | None = None,
    ) -> str | dict:
        """Single-shot completion. With a schema the parsed JSON object is returned.

        ``images`` are base64-encoded and go to vision-capable models alongside the prompt.
        """

        async def call():
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(
                    f"{self.base_url}/api/chat",
                    json=self._payload(prompt, system, schema, stream=False, images=images),
                )
                resp.raise_for_status()
                return resp.json().get("message", {}).get("content", "")

        content = strip_think_tags(await self._with_retry(call))
        if schema is None:
            return content
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise DependencyError(f"LLM returned invalid JSON: {exc}") from exc

    async def stream(self, prompt: str, system: str | None = None, schema: dict | None = None) -> AsyncIterator[str]:
        """Yield content chunks as the model produces them.

        Connection setup is retried; once chunks have been delivered a failure
        is final, since the caller has already consumed part of the output.
        """
        client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        try:
            async def open_stream():
                request = client.build_request(
                    "POST",
                    f"{self.base_url}/api/chat",
                    json=self._payload(prompt, system, schema, stream=True),
                )
                resp = await client.send(request, stream=True)
                if resp.status_code != 200:
                    await resp.aread()
                    await resp.aclose()
                    resp.raise_for_status()
                return resp

            resp = await self._with_retry(open_stream)
            try:
                async for line in resp.aiter_lines():
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if data.get("error"):
                        raise DependencyError(f"LLM stream error: {data['error']}")
                    token = data.get("message", {}).get("content", "")
                    if token:
                        yield token
                    if data.get("done"):
                        break
            except httpx.HTTPError as exc:
                raise DependencyError(f"LLM stream interrupted: {exc}") from exc
            finally:
                await resp.aclose()
        finally:
            await client.aclose()

    async def is_available(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=3.0, transport=self.transport) as client:
                resp = await client.post(f"{self.base_url}/api/show", json={"name": self.model})
                return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("Ollama check failed: %s", exc)
            return False

    async def fetch_image(self, url: str) -> str:
        """Download an image and return it base64-encoded, as the chat API expects."""

        async def call():
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                return resp.content

        return base64.b64encode(await self._with_retry(call)).decode("ascii")

    async def describe_image(self, prompt: str, image_url: str, system: str | None = None) -> str:
        image = await self.fetch_image(image_url)
        return await self.generate(prompt, system=system, images=[image])
