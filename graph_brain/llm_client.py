import asyncio
import logging
from typing import Iterable, Optional

from openai import OpenAI

from .config import Settings


logger = logging.getLogger(__name__)


def build_openai_client(base_url: str, api_key: str, max_retries: int = 0) -> OpenAI:
    return OpenAI(base_url=base_url, api_key=api_key, max_retries=max_retries)


class LLMClient:
    """
    Chat completion wrapper around an OpenAI-compatible endpoint.

    The OpenAI client is passed in so tests (and multiple engines in one
    process) can supply their own.
    """

    def __init__(
        self,
        client: OpenAI,
        model: str,
        max_output_tokens: int = 2048,
        temperature: Optional[float] = None,
    ):
        self._client = client
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMClient":
        client = build_openai_client(
            settings.llm_base_url, settings.llm_api_key, settings.llm_max_retries
        )
        return cls(
            client,
            model=settings.llm_model_name,
            max_output_tokens=settings.llm_max_output_tokens,
            temperature=settings.llm_temperature,
        )

    def chat(
        self,
        messages: Iterable[dict],
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        """
        Send messages in OpenAI format and return the text of the first choice.

        Parameters
        ----------
        messages : iterable of dict
            e.g. [{"role": "user", "content": "Hello"}]
        max_tokens : int | None
            Completion token cap; defaults to ``max_output_tokens``.
        json_mode : bool
            Ask the model for a strict JSON object response.

        Returns an empty string when the model returns no content.
        """
        messages_list = list(messages)
        # Only roles and the first characters, to keep the log readable
        preview = [
            {"role": m.get("role"), "content": str(m.get("content"))[:80]}
            for m in messages_list
        ]
        logger.info("Sending %d message(s) to LLM: %s", len(messages_list), preview)

        request = {
            "model": self.model,
            "messages": messages_list,
            "max_completion_tokens": max_tokens or self.max_output_tokens,
        }
        if self.temperature is not None:
            request["temperature"] = self.temperature
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        response = self._client.chat.completions.create(**request)
        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        logger.info("Received LLM response (length=%d chars)", len(content))
        return content

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        json_mode: bool = False,
    ) -> str:
        """Two-message exchange (system + user) run off the event loop."""
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        return await asyncio.to_thread(self.chat, messages, None, json_mode)


__all__ = ["LLMClient", "build_openai_client"]
