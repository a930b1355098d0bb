import json
import logging
import re
from typing import Any, Dict, Optional

from google import genai
from google.genai import types

from ledgerbot.core.exceptions import GenerationFailed

logger = logging.getLogger(__name__)

FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


class GeminiClient:
    """Wrapper for the Google Gemini API, built once by the app lifespan."""

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash"):
        """
        Args:
            api_key: Gemini API key
            model: Model name to use for every call
        """
        self.model = model
        self.client = genai.Client(api_key=api_key)
        logger.info(f"Initialized Gemini client with model {self.model}")

    async def generate(
        self,
        prompt: str,
        image_bytes: Optional[bytes] = None,
        image_mime_type: str = "image/jpeg",
        temperature: float = 0.1,
        max_output_tokens: int = 4000,
    ) -> str:
        """
        Generate text for a prompt, optionally with one inline image.

        Raises:
            GenerationFailed: API error or empty response. Not retried.
        """
        contents: list = [prompt]
        if image_bytes:
            contents.append(
                types.Part.from_bytes(data=image_bytes, mime_type=image_mime_type)
            )

        config = types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )

        try:
            response = await self.client.aio.models.generate_content(
                model=self.model, contents=contents, config=config
            )
        except Exception as error:
            logger.error(f"Gemini request failed: {error}")
            raise GenerationFailed(f"Gemini request failed: {error}") from error

        text = response.text or ""
        if not text.strip():
            logger.warning("Empty response from Gemini")
            raise GenerationFailed("Gemini returned an empty response")

        return text


def parse_json_reply(text: str) -> Dict[str, Any]:
    """
    Parse a model reply that should be a JSON object.

    Models like to wrap JSON in ```json fences even when told not to.
    """
    cleaned = FENCE.sub("", text or "").strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as error:
        logger.warning(f"Unparseable model reply: {cleaned[:200]}")
        raise GenerationFailed("model reply is not valid JSON") from error

    if not isinstance(data, dict):
        raise GenerationFailed("model reply is not a JSON object")
    return data
