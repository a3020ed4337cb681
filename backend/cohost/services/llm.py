import asyncio
import logging

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
)
from openai.types.chat import ChatCompletionMessageParam

from core.errors import CohostError, NotConnected, RpcFailed, RpcTimeout

LOGGER: logging.Logger = logging.getLogger("LLMClient")


class LLMClient:
    """OpenAI-compatible chat completions against a local Ollama server.

    The supervisor treats it as a connection: ``connect`` succeeds once the
    model listing answers, and ``wait_closed`` returns when a periodic
    health probe starts failing.
    """

    name = "llm"

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        api_key: str = "ollama",
        timeout: float = 30.0,
        health_interval: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.health_interval = health_interval
        self.client = AsyncOpenAI(base_url=f"{self.base_url}/v1", api_key=api_key, timeout=timeout)
        self._up = False
        self._closed = asyncio.Event()

    def status(self) -> bool:
        return self._up

    async def _probe(self) -> None:
        try:
            await self.client.models.list()
        except APITimeoutError as e:
            raise RpcTimeout(f"LLM health check timed out at {self.base_url}") from e
        except APIConnectionError as e:
            raise NotConnected(f"llm ({self.base_url})") from e
        except APIStatusError as e:
            raise RpcFailed(e.status_code, str(e.message)) from e

    async def connect(self) -> None:
        self._closed.clear()
        await self._probe()
        self._up = True
        LOGGER.info(f"LLM reachable at {self.base_url} (model={self.model})")

    async def disconnect(self) -> None:
        self._up = False
        self._closed.set()

    async def wait_closed(self) -> None:
        while not self._closed.is_set():
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self.health_interval)
            except asyncio.TimeoutError:
                try:
                    await self._probe()
                except CohostError as e:
                    LOGGER.warning(f"LLM health check failed: {e}")
                    break
        self._up = False

    async def close(self) -> None:
        await self.disconnect()
        await self.client.close()

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        max_tokens: int,
        temperature: float,
        model: str | None = None,
        timeout: float | None = None,
    ) -> str:
        payload: list[ChatCompletionMessageParam] = messages  # type: ignore[assignment]
        try:
            completion = await self.client.chat.completions.create(
                model=model or self.model,
                messages=payload,
                max_tokens=max_tokens,
                temperature=temperature,
                timeout=timeout or self.timeout,
            )
        except APITimeoutError as e:
            raise RpcTimeout(f"LLM request timed out after {timeout or self.timeout}s") from e
        except APIConnectionError as e:
            # Hand the link back to the supervisor, which reconnects it
            self._up = False
            self._closed.set()
            raise NotConnected(f"llm ({self.base_url})") from e
        except APIStatusError as e:
            raise RpcFailed(e.status_code, str(e.message)) from e
        except OpenAIError as e:
            raise RpcFailed(0, str(e)) from e

        if not completion.choices:
            LOGGER.warning("LLM returned no choices")
            return ""
        raw = completion.choices[0].message.content or ""
        LOGGER.debug(f"LLM [{model or self.model}] raw={len(raw)} chars")
        return raw
