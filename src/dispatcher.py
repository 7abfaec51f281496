"""
Dispatcher Module

Routes a generation request to the backend adapter selected by the
persona's configuration. The dispatcher only guards credential presence;
adapter-level failures pass through untouched.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Mapping, Optional, Sequence, TYPE_CHECKING
import logging

from config import ApiKeys, CREDENTIAL_PROVIDERS
from conversation_state import Message, SYSTEM_AUTHOR
from personas import Persona

if TYPE_CHECKING:
    from providers import ProviderAdapter

logger = logging.getLogger(__name__)


PROVIDER_DISPLAY_NAMES = {
    "cohere": "Cohere",
    "mistral": "Mistral",
    "openrouter": "OpenRouter",
}


class UnsupportedProviderError(ValueError):
    """Raised when a persona names a provider with no adapter."""


@dataclass
class ChatMessage:
    """One prior-transcript entry as seen by the responding persona."""
    role: Literal["user", "model"]
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class TurnContext:
    """Shared, read-only context passed to every generation call."""
    long_term_memory: List[str] = field(default_factory=list)
    conversation_type: Optional[str] = None
    conversation_start_tone: Optional[str] = None


@dataclass
class LLMResult:
    """Result of one generation call."""
    text: str
    internal_monologue: str
    image_base64: Optional[str] = None
    sentiment: Optional[float] = None
    influence_score: Optional[float] = None


def build_history(messages: Sequence[Message], persona_name: str) -> List[ChatMessage]:
    """
    Filter a branch transcript into the history a persona sees.

    Monologues, System messages and loading placeholders are dropped.
    Messages written by the persona map to role "model", everything else
    to role "user".

    Args:
        messages: Branch messages in order
        persona_name: Name of the responding persona

    Returns:
        Filtered chat history
    """
    return [
        ChatMessage(
            role="model" if m.author == persona_name else "user",
            content=m.text,
        )
        for m in messages
        if not m.is_internal_monologue
        and m.author != SYSTEM_AUTHOR
        and not m.is_loading
    ]


def missing_key_result(provider: str) -> LLMResult:
    name = PROVIDER_DISPLAY_NAMES.get(provider, provider)
    return LLMResult(
        text=f"ERROR: {name} API key is not set. Please configure it in the API Keys panel.",
        internal_monologue="API key missing.",
    )


class ProviderDispatcher:
    """
    Selects the adapter for a persona and invokes it.
    """

    def __init__(self, providers: Mapping[str, "ProviderAdapter"]):
        """
        Initialize the dispatcher.

        Args:
            providers: Adapter per provider id
        """
        self.providers = dict(providers)
        logger.info(f"Initialized dispatcher with providers: {sorted(self.providers)}")

    async def dispatch(
        self,
        persona: Persona,
        history: List[ChatMessage],
        prompt: str,
        context: TurnContext,
        api_keys: ApiKeys
    ) -> LLMResult:
        """
        Generate a reply for the persona.

        Args:
            persona: Responding persona
            history: Filtered prior transcript
            prompt: Message the persona answers
            context: Shared turn context
            api_keys: Stored credentials

        Returns:
            LLMResult from the adapter, or an error-shaped result when a
            required credential is missing

        Raises:
            UnsupportedProviderError: If no adapter handles the provider
        """
        provider_id = persona.api_provider
        adapter = self.providers.get(provider_id)
        if adapter is None:
            raise UnsupportedProviderError(f"Unsupported API provider: {provider_id}")

        credential = None
        if provider_id in CREDENTIAL_PROVIDERS:
            credential = api_keys.get(provider_id)
            if not credential:
                logger.warning(f"{provider_id} API key missing; skipping request")
                return missing_key_result(provider_id)

        logger.debug(f"Dispatching {persona.name} to {provider_id}/{persona.model}")
        return await adapter.generate(persona, history, prompt, context, credential)
