"""
Text generation client used by the relationship judge.

Talks to an Ollama-compatible /api/generate endpoint. Any object with an
async `generate(prompt) -> str` method can stand in for it.
"""

from typing import Optional, Protocol

import httpx

from memmesh.errors import UpstreamUnavailable
from memmesh.log import get_logger

logger = get_logger("memmesh.generation")


class TextGenerator(Protocol):
    async def generate(self, prompt: str) -> str:
        ...


class OllamaGenerator:
    """Non-streaming generation over HTTP."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1",
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def generate(self, prompt: str) -> str:
        """Return the generated text.

        Raises:
            UpstreamUnavailable: HTTP failure, timeout, or a response without text
        """
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": 0},
        }
        try:
            timeout = httpx.Timeout(self.timeout_seconds)
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/api/generate", json=payload)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable("generator", f"{type(e).__name__}: {e}") from e

        text = data.get("response") if isinstance(data, dict) else None
        if not text:
            raise UpstreamUnavailable("generator", "empty response")
        return text
