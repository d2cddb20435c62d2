"""
Text and Image Generation

The language model is treated as an opaque text-generation service. No retry
or backoff happens here; the turn orchestrator's error path is the only
safety net.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from openai import AsyncOpenAI

from history_tutor_chat.errors import GenerationFailure

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful Vietnamese history tutor for K-12 students. "
    "Answer clearly, step-by-step when useful. If the user asks for flashcards/quiz, produce them. "
    "Keep answers safe and age-appropriate."
)


class TextGenerator(ABC):
    @abstractmethod
    async def generate(self, prompt: str, grounding_context: str = "") -> str:
        """Return generated text, or raise GenerationFailure."""


class ImageGenerator(ABC):
    @abstractmethod
    async def generate_image(self, prompt: str) -> str:
        """Return the URL of a generated image, or raise GenerationFailure."""


class OpenAITextGenerator(TextGenerator):
    """Chat-completions backed generator."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None:
            if not api_key:
                raise ValueError("OPENAI_API_KEY not found in environment variables")
            client = AsyncOpenAI(api_key=api_key)
        self.llm_client = client
        self.model = model
        self.temperature = temperature

    async def generate(self, prompt: str, grounding_context: str = "") -> str:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        if grounding_context and grounding_context.strip():
            messages.append({"role": "system", "content": f"Context:\n{grounding_context.strip()}"})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self.llm_client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
            )
        except Exception as e:
            logger.warning(f"⚠️ [Generation] Chat completion failed: {e}")
            raise GenerationFailure(f"Text generation failed: {e}") from e

        content = None
        if response.choices:
            content = response.choices[0].message.content
        if not content or not content.strip():
            raise GenerationFailure("Text generation returned no content")

        logger.debug(f"🤖 [Generation] {len(content)} chars from {self.model}")
        return content.strip()


class OpenAIImageGenerator(ImageGenerator):
    """Images API backed illustration generator."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "dall-e-3",
        size: str = "1024x1024",
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None:
            if not api_key:
                raise ValueError("OPENAI_API_KEY not found in environment variables")
            client = AsyncOpenAI(api_key=api_key)
        self.client = client
        self.model = model
        self.size = size

    async def generate_image(self, prompt: str) -> str:
        try:
            response = await self.client.images.generate(
                model=self.model,
                prompt=prompt,
                size=self.size,
                n=1,
            )
        except Exception as e:
            logger.warning(f"⚠️ [Generation] Image generation failed: {e}")
            raise GenerationFailure(f"Image generation failed: {e}") from e

        url = response.data[0].url if response.data else None
        if not url:
            raise GenerationFailure("Image generation returned no URL")
        return url
