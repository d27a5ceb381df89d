"""External collaborators: text generation and chat transport."""

from chatmem.providers.llm import GenerationProvider
from chatmem.providers.openai_llm import OpenAIGenerator
from chatmem.providers.transport import Transport

__all__ = ["GenerationProvider", "OpenAIGenerator", "Transport"]
