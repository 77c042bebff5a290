"""Anthropic Messages API client for thread enrichment."""

from __future__ import annotations

import logging

import anthropic

from gmail_sync.core.exceptions import EnrichmentError

logger = logging.getLogger(__name__)


class LLMClient:
    """One request, one text response. No retries; a failed call fails the thread."""

    def __init__(
        self,
        client: anthropic.Anthropic,
        model: str,
        max_tokens: int = 2048,
    ) -> None:
        self._client = client
        self._model = model
        self._max_tokens = max_tokens

    @classmethod
    def from_api_key(
        cls, api_key: str, model: str, max_tokens: int = 2048, timeout_seconds: float = 60.0
    ) -> LLMClient:
        if not api_key:
            raise EnrichmentError("Anthropic API key not configured")
        client = anthropic.Anthropic(api_key=api_key, timeout=timeout_seconds, max_retries=0)
        return cls(client, model, max_tokens)

    def complete(self, system: str, prompt: str) -> str:
        """Send the prompt and return the first text block of the reply.

        Raises:
            EnrichmentError: On any API failure or an empty reply.
        """
        try:
            response = self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise EnrichmentError(f"Anthropic API error: {e}") from e

        texts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        if not texts:
            raise EnrichmentError("Anthropic response contained no text")

        logger.debug(
            "Claude responded: %s in, %s out",
            response.usage.input_tokens, response.usage.output_tokens,
        )
        return texts[0]
