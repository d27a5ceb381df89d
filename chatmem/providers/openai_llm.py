"""OpenAI-compatible generation provider (works with OpenAI, DeepSeek, etc.)."""

import logging

import httpx

from chatmem.providers.llm import GenerationProvider

logger = logging.getLogger(__name__)


def _temperature(style_hints: dict | None) -> float:
    """Playful and energetic tones sample hotter, calming and serious cooler."""
    if not style_hints:
        return 0.8
    humor = float(style_hints.get("humor", 0.4))
    formality = float(style_hints.get("formality", 0.3))
    return round(min(1.2, max(0.3, 0.7 + 0.5 * humor - 0.4 * formality)), 2)


class OpenAIGenerator(GenerationProvider):
    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        max_tokens: int = 300,
    ):
        self._api_key = api_key
        self.model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_tokens = max_tokens

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        style_hints: dict | None = None,
    ) -> str | None:
        is_reasoner = "reasoner" in self.model

        # Reasoner models take no system role and no temperature
        if is_reasoner:
            messages = [{"role": "user", "content": f"{system_prompt}\n\n{user_prompt}"}]
        else:
            messages = [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ]

        body = {"model": self.model, "messages": messages}
        if is_reasoner:
            body["max_tokens"] = max(self._max_tokens, 4096)
        else:
            body["max_tokens"] = self._max_tokens
            body["temperature"] = _temperature(style_hints)

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(
                f"{self._base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()

        choices = data.get("choices") or []
        if not choices:
            logger.warning("Generation returned no choices (model=%s)", self.model)
            return None
        content = (choices[0].get("message") or {}).get("content") or ""
        content = content.strip()
        return content or None
