from typing import Iterable, Optional
import logging

from openai import OpenAI, OpenAIError

from .config import Settings
from .exceptions import CollaboratorError, ConfigurationError


logger = logging.getLogger(__name__)


class LLMClient:
    """
    OpenAI-compatible chat client (vLLM, OpenAI, or any compatible gateway).
    """

    def __init__(self, settings: Settings, client: Optional[OpenAI] = None):
        if not settings.llm_base_url or not settings.llm_api_key:
            raise ConfigurationError("LLM_BASE_URL and LLM_API_KEY must be set")
        self.model_name = settings.llm_model_name
        self.max_output_tokens = settings.llm_max_output_tokens
        self._client = client or OpenAI(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            timeout=settings.llm_timeout_seconds,
            max_retries=0,
        )

    def chat(
        self,
        messages: Iterable[dict],
        max_tokens: int | None = None,
        temperature: float = 0.2,
    ) -> str:
        """
        Call the chat completions endpoint.

        Parameters
        ----------
        messages : iterable of dict
            List of messages in OpenAI format, e.g.
            [{"role": "user", "content": "Hello"}]
        max_tokens : int | None
            Maximum number of tokens to generate. If None, the configured
            ``llm_max_output_tokens`` is used.
        temperature : float
            Sampling temperature.

        Raises
        ------
        CollaboratorError
            On timeouts, connection problems or API errors.
        """
        messages_list = list(messages)
        # Log only roles and the first characters of each message
        preview = [
            {"role": m.get("role"), "content": str(m.get("content"))[:80]}
            for m in messages_list
        ]
        logger.info("Sending %d message(s) to LLM: %s", len(messages_list), preview)

        effective_max_tokens = max_tokens or self.max_output_tokens
        logger.debug(
            "Calling LLM with max_tokens=%d, temperature=%.2f",
            effective_max_tokens,
            temperature,
        )

        try:
            response = self._client.chat.completions.create(
                model=self.model_name,
                messages=messages_list,
                max_tokens=effective_max_tokens,
                temperature=temperature,
            )
        except OpenAIError as e:
            raise CollaboratorError(f"LLM request failed: {e}") from e

        content = response.choices[0].message.content or ""
        logger.info("Received LLM response (length=%d chars)", len(content))
        return content

    def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int | None = None,
        temperature: float = 0.2,
    ) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return self.chat(messages, max_tokens=max_tokens, temperature=temperature)


__all__ = ["LLMClient"]
