"""
Persona Module

Defines the configurable personas that take part in a duel and the
system instruction each backend receives. Personas hold configuration
only; all conversation history lives in the BranchStore.
"""

from dataclasses import dataclass, asdict, fields
from typing import Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING
import logging
import random

from config import DEFAULT_MODELS, SUPPORTED_PROVIDERS

if TYPE_CHECKING:
    from dispatcher import TurnContext

logger = logging.getLogger(__name__)


COMMUNICATION_STYLES = ("direct", "eloquent", "hesitant")
VERBOSITY_LEVELS = ("minimal", "discrete", "medium", "overwhelming")
FORMALITY_LEVELS = (
    "casual", "informal", "formal", "academic",
    "stoic", "empathic", "apathic", "hostile",
)
HUMOR_STYLES = ("none", "sarcastic", "witty", "dry", "obscure", "dark", "silly", "corny")
INTERRUPT_TENDENCIES = ("never", "occasional", "frequently")
CURIOSITY_LEVELS = ("Uninterested", "Low", "Mid", "High")
OUTLOOKS = ("Pessimist", "Neutral", "Optimist")
SELF_CORRECTION_TENDENCIES = ("Never", "Occasionally", "Often", "Always")
TEMPERAMENTS = ("Easygoing", "Neutral", "Calm", "Rude", "Hateful", "Threatening", "Impatient")


@dataclass
class Persona:
    """Configuration for one conversational agent."""

    name: str
    system_prompt: str
    api_provider: str = "gemini"
    model: str = DEFAULT_MODELS["gemini"]
    temperature: float = 0.7
    supporting_preset_name: str = ""

    # Numeric traits in [0, 1]
    agreeableness: Optional[float] = None
    assertiveness: Optional[float] = None
    openness: Optional[float] = None
    conscientiousness: Optional[float] = None

    # Categorical traits
    communication_style: Optional[str] = None
    verbosity: Optional[str] = None
    formality: Optional[str] = None
    humor_style: Optional[str] = None
    interrupt_tendency: Optional[str] = None
    curiosity_level: Optional[str] = None
    pessimism_optimism: Optional[str] = None
    self_correction_tendency: Optional[str] = None
    temperament: Optional[str] = None

    # Voice settings, consumed by speech playback only
    voice_uri: Optional[str] = None
    voice_pitch: float = 1.0
    voice_rate: float = 1.0

    def __post_init__(self):
        if not self.name.strip():
            raise ValueError("Persona name cannot be empty")
        if self.name in ("User", "System"):
            raise ValueError(f"Persona name '{self.name}' is reserved")

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "Persona":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


_HUMOR = {
    "sarcastic": "Your humor should be sarcastic and dry.",
    "witty": "Your humor relies on clever wordplay and wit.",
    "dry": "You have a very dry, understated sense of humor.",
    "obscure": "Your humor is obscure and referential, often requiring specialized knowledge.",
    "dark": "You employ dark humor, finding comedy in morbid or serious subjects.",
    "silly": "Your humor is silly, lighthearted, and often nonsensical.",
    "corny": "You tell corny jokes and puns.",
}

_FORMALITY = {
    "casual": "Your tone is casual and relaxed.",
    "informal": "Your tone is very informal. Use slang and contractions frequently.",
    "formal": "Your tone should be formal and proper.",
    "academic": "Your tone is academic and intellectual.",
    "stoic": "Your tone is stoic and emotionally reserved.",
    "empathic": "Your tone is warm, understanding, and emotionally supportive.",
    "apathic": "Your tone is flat and emotionally detached.",
    "hostile": "You are hostile and confrontational.",
}

_COMMUNICATION = {
    "direct": "Be direct, clear, and to the point.",
    "eloquent": "Use eloquent and sophisticated language.",
    "hesitant": "Show hesitation; use filler words and phrase things with uncertainty.",
}

_VERBOSITY = {
    "minimal": "Be extremely brief.",
    "discrete": "Give specific, targeted answers without extra fluff.",
    "medium": "Provide reasonably detailed and balanced responses.",
    "overwhelming": "Be overwhelmingly verbose and go on tangents.",
}

_INTERRUPT = {
    "never": "You always wait for the other speaker to finish.",
    "occasional": "Sometimes you open as if cutting the other speaker off politely.",
    "frequently": "You are prone to interrupting the other speaker.",
}

_CURIOSITY = {
    "Uninterested": "You are generally uninterested and rarely ask questions.",
    "Low": "You have a low level of curiosity.",
    "Mid": "You have a moderate level of curiosity.",
    "High": "You are highly curious and frequently ask probing questions.",
}

_OUTLOOK = {
    "Pessimist": "Your outlook is pessimistic.",
    "Neutral": "Your outlook is neutral and balanced.",
    "Optimist": "Your outlook is optimistic.",
}

_SELF_CORRECTION = {
    "Never": "You never admit mistakes or correct yourself.",
    "Occasionally": "You occasionally correct yourself when presented with strong evidence.",
    "Often": "You often review and correct your own statements.",
    "Always": "You constantly self-correct and refine your points.",
}

_TEMPERAMENT = {
    "Easygoing": "You have an easygoing and friendly temperament.",
    "Neutral": "Your temperament is neutral and balanced.",
    "Calm": "You are calm, composed, and patient.",
    "Rude": "You are rude and disrespectful.",
    "Hateful": "Your temperament is hateful.",
    "Threatening": "You often make veiled threats.",
    "Impatient": "You are impatient and easily annoyed.",
}

_CONVERSATION_TYPES = {
    "Discussion": "This is a collaborative discussion. Build on each other's ideas.",
    "Debate": "This is a formal debate. Take a strong stance and defend it with logic and evidence.",
    "Interview": "This is an interview. One persona asks questions while the other answers.",
    "Brainstorm": "This is a brainstorming session. Generate many ideas without judgment.",
    "Rabbit-Hole": "This is a rabbit-hole exploration. Dive into increasingly obscure details.",
    "Argument": "This is a heated argument. Be emotional and stubborn.",
    "Secret": "This is a secret conversation. Speak in code and never state anything directly.",
}

# (low <0.2, lowish <0.4, balanced, highish >0.6, high >0.8)
_SCALES: Dict[str, Tuple[str, ...]] = {
    "agreeableness": (
        "Be highly disagreeable and challenge the other speaker frequently.",
        "Be skeptical and tend to disagree.",
        "Maintain a balanced level of agreeableness.",
        "Be generally agreeable and collaborative.",
        "Be highly agreeable and find common ground.",
    ),
    "assertiveness": (
        "Be passive and defer to the other speaker.",
        "Phrase your opinions as suggestions rather than firm statements.",
        "Maintain a balanced level of assertiveness.",
        "State your opinions clearly, but listen to counterpoints.",
        "State your opinions with conviction and do not back down easily.",
    ),
    "openness": (
        "Be highly resistant to new ideas.",
        "Be cautious about new ideas and stick to familiar topics.",
        "Maintain a balanced openness to new ideas.",
        "Be generally open-minded and curious.",
        "Actively explore unconventional and novel concepts.",
    ),
    "conscientiousness": (
        "Be spontaneous and disorganized.",
        "Be flexible and loosely structured.",
        "Maintain a balanced level of conscientiousness.",
        "Be moderately organized in your responses.",
        "Be highly organized, detail-oriented, and thorough.",
    ),
}

JSON_OUTPUT_INSTRUCTION = (
    "Your entire output must be a single JSON object with the keys "
    "\"internalMonologue\" (your brief step-by-step reasoning, max 80 words), "
    "\"responseText\" (the reply shown to the other speaker), "
    "\"sentiment\" (-1.0 to 1.0, sentiment of responseText), "
    "\"influenceScore\" (0 to 10, how strongly you try to sway the other speaker) "
    "and optionally \"imageGenerationPrompt\" (only when a visual would strongly help). "
    "Do not include any other text or formatting."
)


def _scale_instruction(trait: str, value: float) -> str:
    low, lowish, balanced, highish, high = _SCALES[trait]
    if value > 0.8:
        return high
    if value > 0.6:
        return highish
    if value < 0.2:
        return low
    if value < 0.4:
        return lowish
    return balanced


def _trait_lines(persona: Persona) -> List[str]:
    lines = []
    if persona.humor_style and persona.humor_style != "none":
        lines.append(f"Humor Style: {_HUMOR.get(persona.humor_style, persona.humor_style)}")
    if persona.formality:
        lines.append(f"Formality/Tone: {_FORMALITY.get(persona.formality, persona.formality)}")
    if persona.communication_style:
        lines.append(
            f"Communication Style: "
            f"{_COMMUNICATION.get(persona.communication_style, persona.communication_style)}"
        )
    if persona.verbosity:
        lines.append(f"Verbosity: {_VERBOSITY.get(persona.verbosity, persona.verbosity)}")

    for trait in ("agreeableness", "assertiveness", "openness", "conscientiousness"):
        value = getattr(persona, trait)
        if value is not None:
            lines.append(f"{trait.title()}: {_scale_instruction(trait, value)}")

    for label, value, table in (
        ("Interruption Style", persona.interrupt_tendency, _INTERRUPT),
        ("Curiosity Level", persona.curiosity_level, _CURIOSITY),
        ("Outlook", persona.pessimism_optimism, _OUTLOOK),
        ("Self-Correction", persona.self_correction_tendency, _SELF_CORRECTION),
        ("Temperament", persona.temperament, _TEMPERAMENT),
    ):
        if value:
            lines.append(f"{label}: {table.get(value, value)}")
    return lines


def build_system_instruction(
    persona: Persona,
    context: "TurnContext",
    history_length: int
) -> str:
    """
    Construct the system instruction for one generation call.

    Args:
        persona: Responding persona
        context: Shared turn context (type, tone, memory)
        history_length: Number of entries in the filtered history

    Returns:
        Complete system instruction string
    """
    parts = [persona.system_prompt]

    traits = _trait_lines(persona)
    if traits:
        parts.append(
            "Adhere to the following behavioral traits:\n"
            + "\n".join(f"- {line}" for line in traits)
        )

    if context.conversation_type:
        description = _CONVERSATION_TYPES.get(
            context.conversation_type, context.conversation_type
        )
        parts.append(f"CONVERSATION TYPE: {description}")

    if context.conversation_start_tone and history_length < 2:
        parts.append(
            f"CONVERSATION START TONE: The conversation must begin with a "
            f"{context.conversation_start_tone} tone."
        )

    if context.long_term_memory:
        memory = "\n".join(f"- {fact}" for fact in context.long_term_memory)
        parts.append(
            f"LONG-TERM MEMORY (recall and use these facts when relevant):\n{memory}"
        )

    parts.append(JSON_OUTPUT_INSTRUCTION)
    return "\n\n".join(parts)


class PersonaFactory:
    """
    Factory for creating personas with predefined configurations.
    """

    @staticmethod
    def create_default_pair() -> Tuple[Persona, Persona]:
        """
        Create the Philosopher/Scientist pair every new session starts with.

        Returns:
            Tuple of (persona_1, persona_2)
        """
        persona_1 = Persona(
            name="Philosopher",
            system_prompt="You are a Philosopher.",
            temperature=0.7,
            agreeableness=0.5,
            communication_style="eloquent",
            verbosity="medium",
            formality="academic",
            humor_style="witty",
            interrupt_tendency="never",
            curiosity_level="High",
            pessimism_optimism="Neutral",
            self_correction_tendency="Often",
            temperament="Calm",
            assertiveness=0.6,
            openness=0.8,
            conscientiousness=0.7,
        )

        persona_2 = Persona(
            name="Scientist",
            system_prompt="You are a Scientist.",
            temperature=0.7,
            agreeableness=0.5,
            communication_style="direct",
            verbosity="medium",
            formality="formal",
            humor_style="dry",
            interrupt_tendency="occasional",
            curiosity_level="High",
            pessimism_optimism="Neutral",
            self_correction_tendency="Always",
            temperament="Neutral",
            assertiveness=0.8,
            openness=0.6,
            conscientiousness=0.9,
        )

        return persona_1, persona_2

    @staticmethod
    def create_persona(
        name: str,
        system_prompt: str,
        api_provider: str = "gemini",
        model: Optional[str] = None,
        **traits
    ) -> Persona:
        """
        Create a persona bound to a provider, using that provider's default model.

        Raises:
            ValueError: If the provider is not supported
        """
        if api_provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported API provider: {api_provider}. "
                f"Available: {list(SUPPORTED_PROVIDERS)}"
            )

        persona = Persona(
            name=name,
            system_prompt=system_prompt,
            api_provider=api_provider,
            model=model or DEFAULT_MODELS[api_provider],
            **traits
        )
        logger.info(f"Created persona {name} ({api_provider}/{persona.model})")
        return persona

    @staticmethod
    def randomize_traits(persona: Persona, rng: Optional[random.Random] = None) -> Persona:
        """
        Return a copy of the persona with every behavioral trait redrawn.

        Identity, directive and backend binding are kept.
        """
        rng = rng or random.Random()

        def pick(options: Sequence[str]) -> str:
            return rng.choice(list(options))

        data = persona.to_dict()
        data.update(
            temperature=round(rng.uniform(0.2, 1.2), 2),
            agreeableness=round(rng.random(), 2),
            assertiveness=round(rng.random(), 2),
            openness=round(rng.random(), 2),
            conscientiousness=round(rng.random(), 2),
            communication_style=pick(COMMUNICATION_STYLES),
            verbosity=pick(VERBOSITY_LEVELS),
            formality=pick(FORMALITY_LEVELS),
            humor_style=pick(HUMOR_STYLES),
            interrupt_tendency=pick(INTERRUPT_TENDENCIES),
            curiosity_level=pick(CURIOSITY_LEVELS),
            pessimism_optimism=pick(OUTLOOKS),
            self_correction_tendency=pick(SELF_CORRECTION_TENDENCIES),
            temperament=pick(TEMPERAMENTS),
        )
        return Persona.from_dict(data)
