# veda_rag/llm.py — OpenAI-compatible chat client (LM Studio by default)

import json
import re
from typing import AsyncIterator, Optional, Protocol

import httpx

from .config import LLM_TIMEOUT, LMSTUDIO_API, MODEL_NAME, log_debug
from .errors import LLMError

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)


class TextGenerator(Protocol):
    async def generate(self, prompt: str, temperature: float = 0.3) -> str: ...

    def stream(self, prompt: str, temperature: float = 0.6) -> AsyncIterator[str]: ...


def strip_think(text: str) -> str:
    return _THINK_RE.sub("", text or "").strip()


def _drop_think(delta: str, inside: bool):
    """Streaming variant of strip_think: (visible text, still inside <think>)."""
    out, rest = "", delta
    while rest:
        if inside:
            if "</think>" not in rest:
                return out, True
            rest = rest.split("</think>", 1)[1]
            inside = False
        elif "<think>" in rest:
            pre, rest = rest.split("<think>", 1)
            out += pre
            inside = True
        else:
            out += rest
            rest = ""
    return out, inside


class LMStudioClient:
    def __init__(self,
                 api_url: str = LMSTUDIO_API,
                 model: str = MODEL_NAME,
                 timeout: float = LLM_TIMEOUT,
                 max_tokens: int = 1000,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_url = api_url
        self.model = model
        self.max_tokens = max_tokens
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=5.0), transport=transport)

    def _payload(self, prompt: str, temperature: float, stream: bool) -> dict:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.max_tokens,
            "temperature": temperature,
            "stream": stream,
        }

    async def generate(self, prompt: str, temperature: float = 0.3) -> str:
        try:
            r = await self._client.post(self.api_url, json=self._payload(prompt, temperature, False))
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as e:
            raise LLMError(f"LM Studio request failed: {e}") from e
        except ValueError as e:
            raise LLMError(f"LM Studio returned non-JSON body: {e}") from e
        content = ((data.get("choices") or [{}])[0].get("message") or {}).get("content") or ""
        return strip_think(content)

    async def stream(self, prompt: str, temperature: float = 0.6) -> AsyncIterator[str]:
        inside_think = False
        try:
            async with self._client.stream("POST", self.api_url,
                                           json=self._payload(prompt, temperature, True)) as r:
                r.raise_for_status()
                async for line in r.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        log_debug(f"⚠️ Skipping malformed stream chunk: {data[:80]}")
                        continue
                    delta = ((chunk.get("choices") or [{}])[0].get("delta") or {}).get("content") or ""
                    delta, inside_think = _drop_think(delta, inside_think)
                    if delta:
                        yield delta
        except httpx.HTTPError as e:
            raise LLMError(f"LM Studio stream failed: {e}") from e

    async def aclose(self):
        await self._client.aclose()
