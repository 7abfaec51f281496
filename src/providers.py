"""
Providers Module

Backend adapters for the supported LLM providers. Every adapter turns
(persona, history, prompt, context) into a single JSON-mode chat request
and decodes the model's JSON payload into an LLMResult.

Adapters return an error-shaped LLMResult when the model output cannot be
decoded, and raise for transport failures (connection errors, timeouts,
non-2xx responses).
"""

from typing import Any, Dict, List, Optional, Tuple
from abc import ABC, abstractmethod
import asyncio
import json
import logging
import re

import aiohttp

from config import SystemConfig
from dispatcher import ChatMessage, LLMResult, TurnContext
from personas import Persona, build_system_instruction

logger = logging.getLogger(__name__)

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_IMAGE_MODEL = "imagen-4.0-generate-001"
COHERE_API_URL = "https://api.cohere.com/v2/chat"
MISTRAL_API_URL = "https://api.mistral.ai/v1/chat/completions"
OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class ProviderError(RuntimeError):
    """Transport-level failure talking to a provider."""

    def __init__(self, provider: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def parse_model_payload(raw_text: str, provider: str) -> Tuple[LLMResult, Optional[str]]:
    """
    Decode the JSON object a model was instructed to produce.

    Args:
        raw_text: Model output
        provider: Provider id, used in log messages

    Returns:
        Tuple of (LLMResult, image generation prompt or None)
    """
    text = raw_text.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse JSON from {provider}, treating as plain text")
        return LLMResult(
            text=raw_text,
            internal_monologue="The model's response was not valid JSON.",
        ), None

    if not isinstance(payload, dict):
        logger.warning(f"{provider} returned non-object JSON: {text[:100]}")
        return LLMResult(
            text=f"Error: Model returned non-object JSON response. Content: {text}",
            internal_monologue="Failed to parse a valid JSON object from the model's response.",
        ), None

    image_prompt = payload.get("imageGenerationPrompt")
    result = LLMResult(
        text=payload.get("responseText") or "No response text provided.",
        internal_monologue=payload.get("internalMonologue") or "No monologue provided.",
        sentiment=_to_float(payload.get("sentiment")),
        influence_score=_to_float(payload.get("influenceScore")),
    )
    return result, image_prompt if isinstance(image_prompt, str) and image_prompt.strip() else None


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.
    """

    name: str = "provider"

    def __init__(self, timeout_seconds: float = 120.0):
        """
        Initialize an adapter.

        Args:
            timeout_seconds: Total timeout for one HTTP request
        """
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    async def generate(
        self,
        persona: Persona,
        history: List[ChatMessage],
        prompt: str,
        context: TurnContext,
        credential: Optional[str] = None
    ) -> LLMResult:
        """
        Generate one persona reply.

        Args:
            persona: Responding persona
            history: Filtered prior transcript
            prompt: Message being answered
            context: Shared turn context
            credential: API key for providers that need one

        Returns:
            LLMResult
        """
        pass

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        POST a JSON body and return the decoded JSON response.

        Raises:
            ProviderError: On non-2xx responses
            aiohttp.ClientError: On connection failures
            asyncio.TimeoutError: When the request exceeds the timeout
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status < 200 or response.status >= 300:
                    body = await response.text()
                    raise ProviderError(
                        self.name,
                        f"{self.name} API request failed: {response.status} {body[:300]}",
                        status=response.status,
                    )
                return await response.json(content_type=None)

    @staticmethod
    def _chat_messages(
        system_instruction: str,
        history: List[ChatMessage],
        prompt: str,
        model_role: str = "assistant"
    ) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": system_instruction}]
        for entry in history:
            role = model_role if entry.role == "model" else "user"
            messages.append({"role": role, "content": entry.content})
        messages.append({"role": "user", "content": prompt})
        return messages


class GeminiProvider(ProviderAdapter):
    """
    Google Gemini over the generativelanguage REST API.

    Also serves the analysis utilities through generate_text().
    """

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        base_url: str = GEMINI_API_URL,
        image_model: str = GEMINI_IMAGE_MODEL,
        timeout_seconds: float = 120.0
    ):
        super().__init__(timeout_seconds)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.image_model = image_model

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ProviderError(self.name, "Gemini API key is not configured")
        return {"x-goog-api-key": self.api_key}

    async def generate_text(
        self,
        prompt: str,
        model: str = "gemini-2.5-flash",
        temperature: float = 1.0,
        system_instruction: Optional[str] = None,
        contents: Optional[List[Dict[str, Any]]] = None,
        json_mode: bool = False
    ) -> str:
        """
        Run one generateContent call and return the concatenated text.

        Args:
            prompt: User prompt (ignored when contents is given)
            model: Gemini model id
            temperature: Sampling temperature
            system_instruction: Optional system instruction
            contents: Full contents list, overriding prompt
            json_mode: Request an application/json response

        Returns:
            Response text
        """
        generation_config: Dict[str, Any] = {"temperature": temperature}
        if json_mode:
            generation_config["responseMimeType"] = "application/json"

        payload: Dict[str, Any] = {
            "contents": contents or [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        data = await self._post_json(
            f"{self.base_url}/models/{model}:generateContent",
            payload,
            headers=self._headers(),
        )

        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError(self.name, "Gemini response contained no candidates")
        return "".join(part.get("text", "") for part in parts).strip()

    async def generate_image(self, prompt: str) -> Optional[str]:
        """
        Generate one square PNG image.

        Returns:
            Base64 image bytes, or None when no image came back
        """
        data = await self._post_json(
            f"{self.base_url}/models/{self.image_model}:predict",
            {
                "instances": [{"prompt": prompt}],
                "parameters": {"sampleCount": 1, "aspectRatio": "1:1"},
            },
            headers=self._headers(),
        )
        predictions = data.get("predictions") or []
        if predictions:
            return predictions[0].get("bytesBase64Encoded")
        return None

    async def generate(
        self,
        persona: Persona,
        history: List[ChatMessage],
        prompt: str,
        context: TurnContext,
        credential: Optional[str] = None
    ) -> LLMResult:
        contents = [
            {"role": entry.role, "parts": [{"text": entry.content}]}
            for entry in history
        ]
        contents.append({"role": "user", "parts": [{"text": prompt}]})

        raw_text = await self.generate_text(
            prompt,
            model=persona.model,
            temperature=persona.temperature,
            system_instruction=build_system_instruction(persona, context, len(history)),
            contents=contents,
            json_mode=True,
        )
        result, image_prompt = parse_model_payload(raw_text, self.name)

        if image_prompt:
            try:
                result.image_base64 = await self.generate_image(image_prompt)
            except (aiohttp.ClientError, asyncio.TimeoutError, ProviderError) as e:
                logger.error(f"Error generating image with Gemini: {e}")

        return result


class OllamaProvider(ProviderAdapter):
    """Local Ollama server via /api/chat."""

    name = "ollama"

    def __init__(self, base_url: str = "http://localhost:11434", timeout_seconds: float = 120.0):
        super().__init__(timeout_seconds)
        self.base_url = base_url.rstrip("/")

    async def generate(
        self,
        persona: Persona,
        history: List[ChatMessage],
        prompt: str,
        context: TurnContext,
        credential: Optional[str] = None
    ) -> LLMResult:
        system_instruction = build_system_instruction(persona, context, len(history))
        data = await self._post_json(
            f"{self.base_url}/api/chat",
            {
                "model": persona.model,
                "messages": self._chat_messages(system_instruction, history, prompt),
                "stream": False,
                "format": "json",
                "options": {"temperature": persona.temperature},
            },
        )
        raw_text = (data.get("message") or {}).get("content", "")
        result, _ = parse_model_payload(raw_text, self.name)
        return result


class CohereProvider(ProviderAdapter):
    """Cohere v2 chat API."""

    name = "cohere"

    def __init__(self, api_url: str = COHERE_API_URL, timeout_seconds: float = 120.0):
        super().__init__(timeout_seconds)
        self.api_url = api_url

    async def generate(
        self,
        persona: Persona,
        history: List[ChatMessage],
        prompt: str,
        context: TurnContext,
        credential: Optional[str] = None
    ) -> LLMResult:
        system_instruction = build_system_instruction(persona, context, len(history))
        data = await self._post_json(
            self.api_url,
            {
                "model": persona.model,
                "messages": self._chat_messages(system_instruction, history, prompt),
                "temperature": persona.temperature,
                "response_format": {"type": "json_object"},
            },
            headers={"Authorization": f"Bearer {credential}"},
        )

        try:
            content = data["message"]["content"]
        except (KeyError, TypeError):
            raise ProviderError(self.name, "Cohere response contained no message")
        raw_text = "".join(item.get("text", "") for item in content if isinstance(item, dict))
        result, _ = parse_model_payload(raw_text, self.name)
        return result


class OpenAICompatibleProvider(ProviderAdapter):
    """
    Chat-completions style APIs (Mistral, OpenRouter).
    """

    def __init__(self, api_url: str, timeout_seconds: float = 120.0):
        super().__init__(timeout_seconds)
        self.api_url = api_url

    def _headers(self, credential: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credential}"}

    async def generate(
        self,
        persona: Persona,
        history: List[ChatMessage],
        prompt: str,
        context: TurnContext,
        credential: Optional[str] = None
    ) -> LLMResult:
        system_instruction = build_system_instruction(persona, context, len(history))
        data = await self._post_json(
            self.api_url,
            {
                "model": persona.model,
                "messages": self._chat_messages(system_instruction, history, prompt),
                "temperature": persona.temperature,
                "response_format": {"type": "json_object"},
            },
            headers=self._headers(credential),
        )

        try:
            raw_text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise ProviderError(self.name, f"{self.name} response contained no choices")
        result, _ = parse_model_payload(raw_text, self.name)
        return result


class MistralProvider(OpenAICompatibleProvider):
    name = "mistral"

    def __init__(self, api_url: str = MISTRAL_API_URL, timeout_seconds: float = 120.0):
        super().__init__(api_url, timeout_seconds)


class OpenRouterProvider(OpenAICompatibleProvider):
    name = "openrouter"

    def __init__(self, api_url: str = OPENROUTER_API_URL, timeout_seconds: float = 120.0):
        super().__init__(api_url, timeout_seconds)

    def _headers(self, credential: Optional[str]) -> Dict[str, str]:
        headers = super()._headers(credential)
        headers["X-Title"] = "Persona Duel"
        return headers


def create_default_providers(config: SystemConfig) -> Dict[str, ProviderAdapter]:
    """
    Build one adapter per supported provider.

    Args:
        config: System configuration

    Returns:
        Mapping of provider id to adapter
    """
    timeout = config.request_timeout_seconds
    return {
        "gemini": GeminiProvider(config.gemini_api_key, timeout_seconds=timeout),
        "ollama": OllamaProvider(config.ollama_base_url, timeout_seconds=timeout),
        "cohere": CohereProvider(timeout_seconds=timeout),
        "mistral": MistralProvider(timeout_seconds=timeout),
        "openrouter": OpenRouterProvider(timeout_seconds=timeout),
    }
