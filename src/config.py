"""
Configuration Module

Centralized configuration management for the persona duel system:
runtime settings, provider defaults and the API credential store.
"""

from dataclasses import dataclass, asdict
from typing import Dict, List, Optional
import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


SUPPORTED_PROVIDERS = ("gemini", "ollama", "cohere", "mistral", "openrouter")

# Providers whose credential lives in the CredentialStore
CREDENTIAL_PROVIDERS = ("cohere", "mistral", "openrouter")

DEFAULT_MODELS: Dict[str, str] = {
    "gemini": "gemini-2.5-flash",
    "ollama": "llama3",
    "cohere": "command-r-plus",
    "mistral": "mistral-large-latest",
    "openrouter": "google/gemini-2.5-flash",
}

CONVERSATION_TYPES: List[str] = [
    "Discussion", "Debate", "Interview", "Brainstorm",
    "Rabbit-Hole", "Argument", "Secret",
]

CONVERSATION_START_TONES: List[str] = [
    "Neutral", "Welcoming", "Funny", "Sad", "Tense", "Awkward", "Dark",
    "Unsettling", "Confusing", "Shocking", "Terrifying", "Joyous",
    "Emotionless", "Respectful", "Chaotic", "Calm",
]

DEFAULT_TOPIC = "The nature of consciousness."
DEFAULT_CONVERSATION_TYPE = "Debate"
DEFAULT_START_TONE = "Neutral"
DEFAULT_MEMORY = ["The conversation is about to start."]


@dataclass
class SystemConfig:
    """Main system configuration."""

    # API Configuration
    gemini_api_key: str = ""
    ollama_base_url: str = "http://localhost:11434"

    # Storage Configuration
    storage_dir: str = "./conversations"
    log_dir: str = "./logs"
    credentials_file: Optional[str] = None

    # Logging Configuration
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Timing Configuration
    request_timeout_seconds: float = 120.0
    turn_delay_seconds: float = 0.5
    branch_transition_seconds: float = 0.3

    # Simulation Defaults
    default_max_turns: int = 10
    default_messages_per_turn: int = 1

    def __post_init__(self):
        """Validate and setup configuration."""
        if self.default_messages_per_turn not in (1, 2):
            raise ValueError(
                f"default_messages_per_turn must be 1 or 2, "
                f"got {self.default_messages_per_turn}"
            )
        if self.default_max_turns < 1:
            raise ValueError("default_max_turns must be at least 1")

        Path(self.storage_dir).mkdir(parents=True, exist_ok=True)
        Path(self.log_dir).mkdir(parents=True, exist_ok=True)

        if self.log_file is None:
            self.log_file = str(Path(self.log_dir) / "persona_duel.log")
        if self.credentials_file is None:
            self.credentials_file = str(Path(self.storage_dir) / "api_keys.json")


class ConfigLoader:
    """
    Loads configuration from environment variables and dictionaries.
    """

    @staticmethod
    def load_from_env() -> SystemConfig:
        """
        Load system configuration from environment variables.

        The Gemini key is optional here: without it the Gemini adapter
        fails at request time and the turn becomes a system error message.

        Returns:
            SystemConfig instance
        """
        gemini_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("API_KEY", "")
        if not gemini_key:
            logger.warning("GEMINI_API_KEY not set; Gemini personas will fail")

        return SystemConfig(
            gemini_api_key=gemini_key,
            ollama_base_url=os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434"),
            storage_dir=os.environ.get("STORAGE_DIR", "./conversations"),
            log_dir=os.environ.get("LOG_DIR", "./logs"),
            credentials_file=os.environ.get("CREDENTIALS_FILE"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_file=os.environ.get("LOG_FILE"),
            request_timeout_seconds=float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "120")),
            turn_delay_seconds=float(os.environ.get("TURN_DELAY_SECONDS", "0.5")),
            branch_transition_seconds=float(os.environ.get("BRANCH_TRANSITION_SECONDS", "0.3")),
            default_max_turns=int(os.environ.get("DEFAULT_MAX_TURNS", "10")),
            default_messages_per_turn=int(os.environ.get("DEFAULT_MESSAGES_PER_TURN", "1")),
        )

    @staticmethod
    def load_from_dict(config_dict: dict) -> SystemConfig:
        """
        Load system configuration from dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            SystemConfig instance
        """
        return SystemConfig(**config_dict)


# Preset simulation settings for common duel styles

PRESET_CONFIGS = {
    "quick_duel": {
        "default_max_turns": 4,
        "default_messages_per_turn": 1,
    },
    "long_duel": {
        "default_max_turns": 20,
        "default_messages_per_turn": 2,
    },
    "rapid_fire": {
        "default_max_turns": 10,
        "default_messages_per_turn": 1,
        "turn_delay_seconds": 0.1,
    },
}


def get_preset_config(preset_name: str, base_config: SystemConfig) -> SystemConfig:
    """
    Apply a preset configuration to a base config.

    Args:
        preset_name: Name of preset configuration
        base_config: Base system configuration

    Returns:
        Updated SystemConfig

    Raises:
        ValueError: If preset name is unknown
    """
    if preset_name not in PRESET_CONFIGS:
        raise ValueError(
            f"Unknown preset: {preset_name}. "
            f"Available: {list(PRESET_CONFIGS.keys())}"
        )

    values = asdict(base_config)
    values.update(PRESET_CONFIGS[preset_name])
    return SystemConfig(**values)


@dataclass
class ApiKeys:
    """Stored credentials for the providers that need one."""
    cohere: str = ""
    mistral: str = ""
    openrouter: str = ""

    def get(self, provider: str) -> str:
        return getattr(self, provider, "") or ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class CredentialStore:
    """
    JSON-file backed key-value store for provider API keys.

    Reads and writes are synchronous; the orchestration core only reads
    at dispatch time.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def get(self) -> ApiKeys:
        """
        Read the stored keys.

        Returns:
            ApiKeys (empty keys if the file is missing or unreadable)
        """
        if not self.path.exists():
            return ApiKeys()

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load API keys from {self.path}: {e}")
            return ApiKeys()

        return ApiKeys(**{
            name: str(data.get(name, "") or "")
            for name in CREDENTIAL_PROVIDERS
        })

    def set(self, keys: ApiKeys) -> None:
        """
        Persist the given keys, replacing whatever was stored.

        Args:
            keys: Keys to store
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(keys.to_dict(), f, indent=2)
        logger.info(f"Saved API keys to: {self.path}")
