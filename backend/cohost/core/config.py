"""Cohost service configuration"""

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.actions import action_from_spec

logger = logging.getLogger(__name__)

# === Path Configuration ===
COHOST_DIR = Path(__file__).parent.parent
BACKEND_DIR = COHOST_DIR.parent
COMPONENTS_DIR = COHOST_DIR / "components"
AUDIO_DIR = COHOST_DIR / "audio"

BOT_SCOPES = [
    "user:bot",  # Bot identifier
    "user:read:chat",  # Read chat messages
    "user:write:chat",  # Send chat messages
    "user:manage:whispers",  # Private notices to redeemers
]

BROADCASTER_SCOPES = [
    "channel:bot",  # Allow bot to join channel
    "channel:read:redemptions",  # Channel points EventSub
    "channel:manage:redemptions",  # Create rewards, fulfill/cancel redemptions
    "channel:manage:broadcast",  # Preset title/category/tags
    "moderator:manage:banned_users",  # Ban / timeout
    "moderator:manage:chat_messages",  # Delete messages
]

MUSIC_URL_PATTERN = r"^https://music\.yandex\.(ru|com)/(album/\d+/)?track/\d+"


class RuleSpec(BaseModel):
    """One chat rule: every pattern must match (case-insensitive)."""

    action: dict[str, Any]
    patterns: list[str]


class RewardSpec(BaseModel):
    title: str
    cost: int
    prompt: str = ""
    background_color: str = "#9146FF"
    cooldown_seconds: int = 0
    user_input_required: bool = False
    action: dict[str, Any]


class PresetSpec(BaseModel):
    title: str
    game_id: str
    tags: list[str] = Field(default_factory=list)
    rewards_active: list[str] = Field(default_factory=list)


class VoiceChoice(BaseModel):
    """Maps a language prefix (``ru``, ``en-GB``...) to a Polly voice."""

    language: str
    voice: str
    engine: str = "neural"


DEFAULT_CHAT_RULES: list[dict[str, Any]] = [
    {"action": {"type": "ban"}, "patterns": [r"viewers", r"nezhna.+\.com"]},
    {"action": {"type": "timeout", "seconds": 30}, "patterns": [r"zhopa", r"spam"]},
    {"action": {"type": "voice"}, "patterns": [r"^!voice\s+(.+)"]},
]

DEFAULT_REWARDS: dict[str, dict[str, Any]] = {
    "hate": {
        "title": "⚡ Hate the streamer",
        "cost": 300,
        "prompt": "Strike the streamer with lightning",
        "background_color": "#FF4444",
        "cooldown_seconds": 30,
        "action": {"type": "hate"},
    },
    "love": {
        "title": "💚 Love the streamer",
        "cost": 200,
        "prompt": "Heal the streamer and protect them from haters",
        "background_color": "#44FF44",
        "action": {"type": "love"},
    },
    "music": {
        "title": "🎵 Music Request",
        "cost": 150,
        "prompt": "Paste a Yandex Music track link",
        "background_color": "#1DB954",
        "user_input_required": True,
        "action": {"type": "queue_music", "url": "{input}"},
    },
    "vote_skip": {
        "title": "🎵 Skip song",
        "cost": 30,
        "prompt": "Vote to skip the current track",
        "background_color": "#FF6B6B",
        "action": {"type": "vote_skip"},
    },
    "playing": {
        "title": "What is playing?",
        "cost": 30,
        "prompt": "Show the current track in chat",
        "background_color": "#9B59B6",
        "action": {"type": "now_playing"},
    },
    "voice": {
        "title": "🤖 Voice",
        "cost": 50,
        "prompt": "Text to read aloud",
        "background_color": "#00ADB5",
        "cooldown_seconds": 60,
        "user_input_required": True,
        "action": {"type": "voice", "text": "{input}"},
    },
    "neuro": {
        "title": "🧠 Ask Neuro",
        "cost": 100,
        "prompt": "Ask the AI anything",
        "background_color": "#8A2BE2",
        "cooldown_seconds": 45,
        "user_input_required": True,
        "action": {"type": "neuro_ask", "prompt": "{input}"},
    },
}

DEFAULT_PRESETS: dict[str, dict[str, Any]] = {
    "chatting": {
        "title": "Hanging out with chat",
        "game_id": "509658",
        "tags": ["English", "Chatting"],
        "rewards_active": ["music", "vote_skip", "playing", "voice", "neuro"],
    },
    "coding": {
        "title": "Building things live",
        "game_id": "1469308723",
        "tags": ["English", "Programming"],
        "rewards_active": ["music", "vote_skip", "playing", "neuro"],
    },
    "gaming": {
        "title": "Surviving the night",
        "game_id": "27471",
        "tags": ["English", "Minecraft"],
        "rewards_active": ["hate", "love", "voice", "music", "vote_skip", "playing"],
    },
    "afk": {
        "title": "Be right back",
        "game_id": "509658",
        "tags": ["English"],
        "rewards_active": [],
    },
}

DEFAULT_PERSONA = (
    "You are a friendly co-host sitting in a live stream chat. "
    "You keep replies short, warm and on topic."
)

DEFAULT_ALLOWED_TOPICS = [
    "Friendly banter, jokes and memes",
    "Questions about the stream, the game or the music",
    "Mild swearing that is not aimed at anyone",
]

DEFAULT_DISALLOWED_TOPICS = [
    "Hate speech, slurs or harassment of anyone",
    "Advertising, spam links and self-promotion",
    "Sharing personal information of others",
]


class CohostSettings(BaseSettings):
    """Cohost settings"""

    model_config = SettingsConfigDict(
        env_file=Path(__file__).parent.parent / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Twitch OAuth
    client_id: str = Field(..., description="Twitch OAuth Client ID")
    client_secret: str = Field(..., description="Twitch OAuth Client Secret")

    # Accounts
    bot_id: str = Field(..., description="Bot User ID")
    broadcaster_id: str = Field(..., description="Broadcaster (operator) User ID")
    broadcaster_login: str = Field(..., description="Broadcaster login name")

    # Database
    database_url: str = Field(..., description="PostgreSQL database URL")

    # Local HTTP server (health + music player socket)
    health_host: str = Field(default="127.0.0.1", description="Health server bind host")
    health_port: int = Field(default=4344, description="Health server port")

    # Dispatcher
    event_queue_max: int = Field(default=1024, description="Pending event limit")
    tick_interval: float = Field(default=5.0, description="Seconds between Tick events")

    # Chat history / rules
    history_size: int = Field(default=50, description="Chat history capacity")
    chat_rules: list[RuleSpec] = Field(
        default_factory=lambda: [RuleSpec(**r) for r in DEFAULT_CHAT_RULES],
        description="Chat-action rules, first match wins",
    )
    forward_chat_to_game: bool = Field(default=True, description="Mirror chat into game")
    chat_sound: str = Field(default="", description="Sound played on each chat message")

    # Hate / love
    hate_cooldown: float = Field(default=60.0, description="Per-user hate cooldown (s)")
    love_protection: float = Field(default=60.0, description="Love protection window (s)")
    lightning_delay: float = Field(default=1.0, description="Delay before lightning (s)")
    game_player: str = Field(default="streamer", description="In-game player name")
    heal_command: str = Field(
        default="effect give {player} minecraft:instant_health 3 255 true",
        description="Game command sent on hate",
    )
    lightning_command: str = Field(
        default="execute at {player} run summon minecraft:lightning_bolt ~ ~ ~",
        description="Game command sent after heal",
    )

    # Music
    vote_skip_threshold: int = Field(default=3, description="Votes needed to skip")
    fallback_music_url: str = Field(
        default="https://music.yandex.ru/", description="Played when queue is empty"
    )
    initial_song_name: str = Field(default="Silence by silencer", description="Name at boot")
    music_url_pattern: str = Field(default=MUSIC_URL_PATTERN, description="Allowed track URLs")

    # Rewards / presets
    rewards: dict[str, RewardSpec] = Field(
        default_factory=lambda: {k: RewardSpec(**v) for k, v in DEFAULT_REWARDS.items()}
    )
    presets: dict[str, PresetSpec] = Field(
        default_factory=lambda: {k: PresetSpec(**v) for k, v in DEFAULT_PRESETS.items()}
    )

    # Supervisor
    reconnect_delay: float = Field(default=5.0, description="Seconds before reconnect")

    # LLM (Ollama, OpenAI-compatible)
    llm_base_url: str = Field(default="http://localhost:11434", description="LLM server")
    llm_api_key: str = Field(default="ollama", description="LLM API key (unused by Ollama)")
    llm_model: str = Field(default="llama3.2", description="LLM model name")
    llm_timeout: float = Field(default=30.0, description="LLM request timeout (s)")
    llm_health_interval: float = Field(default=30.0, description="LLM health poll (s)")
    llm_chat_monitoring: bool = Field(default=True, description="Run the chat decision loop")
    llm_classify_max_tokens: int = Field(default=128)
    llm_classify_temperature: float = Field(default=0.5)
    llm_reply_max_tokens: int = Field(default=256)
    llm_reply_temperature: float = Field(default=0.7)
    llm_persona: str = Field(default=DEFAULT_PERSONA, description="System prompt persona")
    llm_allowed_topics: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_TOPICS))
    llm_disallowed_topics: list[str] = Field(
        default_factory=lambda: list(DEFAULT_DISALLOWED_TOPICS)
    )
    llm_extension_actions: dict[str, dict[str, Any]] = Field(
        default_factory=dict, description="Extra LLM actions: name -> action spec"
    )
    neuro_max_tokens: int = Field(default=256)
    neuro_temperature: float = Field(default=0.7)

    # Game bridge / speech source
    game_bridge_url: str = Field(default="ws://localhost:8765", description="Game bridge")
    speech_url: str = Field(default="ws://localhost:8766", description="Speech-to-text feed")
    speech_trigger_pattern: str = Field(
        default=r"^(работай|роботай)\s+(.+)$", description="Phrase prefix for injection"
    )

    # TTS / sound
    aws_region: str = Field(default="us-east-1", description="Polly region")
    tts_voices: list[VoiceChoice] = Field(
        default_factory=lambda: [
            VoiceChoice(language="ru", voice="Tatyana", engine="standard"),
            VoiceChoice(language="en", voice="Ivy"),
        ],
        description="First entry whose language prefix matches wins",
    )
    tts_fallback_language: str = Field(default="en")
    audio_dir: Path = Field(default=AUDIO_DIR, description="Directory with <name>.mp3 files")
    sound_effects: list[str] = Field(
        default_factory=lambda: ["boo", "creeper", "tentacle", "woop", "ahhh", "icq"]
    )
    fallback_sound: str = Field(default="boo")
    ffplay_path: str = Field(default="ffplay")

    # Environment
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL starts with postgresql://"""
        if not v.startswith("postgresql://"):
            raise ValueError("DATABASE_URL must start with 'postgresql://'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper

    @field_validator("history_size", "vote_skip_threshold", "event_queue_max")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("music_url_pattern", "speech_trigger_pattern")
    @classmethod
    def validate_regex(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regular expression: {e}") from e
        return v

    @field_validator("chat_rules")
    @classmethod
    def validate_rules(cls, v: list[RuleSpec]) -> list[RuleSpec]:
        for rule in v:
            if not rule.patterns:
                raise ValueError("a chat rule needs at least one pattern")
            action_from_spec(rule.action)
            for pattern in rule.patterns:
                try:
                    re.compile(pattern, re.IGNORECASE)
                except re.error as e:
                    raise ValueError(f"invalid rule pattern {pattern!r}: {e}") from e
        return v

    @field_validator("rewards")
    @classmethod
    def validate_rewards(cls, v: dict[str, RewardSpec]) -> dict[str, RewardSpec]:
        for spec in v.values():
            action_from_spec(spec.action)
        return v

    @field_validator("llm_extension_actions")
    @classmethod
    def validate_extensions(cls, v: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
        for name, spec in v.items():
            if not re.fullmatch(r"[a-z_]+", name):
                raise ValueError(f"extension action name '{name}' must be lowercase snake_case")
            action_from_spec(extension_action_spec(spec))
        return v


def extension_action_spec(spec: dict[str, Any]) -> dict[str, Any]:
    """Extension entries carry an optional ``description`` next to the action spec."""
    return {k: v for k, v in spec.items() if k != "description"}


@lru_cache
def get_settings() -> CohostSettings:
    """Get cached settings instance"""
    return CohostSettings()  # type: ignore[call-arg]


def apply_overrides(settings: CohostSettings, overrides: dict[str, Any]) -> CohostSettings:
    """Layer ``config.<field>`` store values over the environment settings.

    Unknown fields and values that fail validation are logged and skipped;
    the rest are applied together.
    """
    accepted: dict[str, Any] = {}
    for key, value in overrides.items():
        name = key.removeprefix("config.")
        if name not in CohostSettings.model_fields:
            logger.warning(f"[CONFIG] Ignoring unknown override '{key}'")
            continue
        try:
            CohostSettings.model_validate({**settings.model_dump(), name: value})
        except ValidationError as e:
            logger.warning(f"[CONFIG] Ignoring invalid override '{key}': {e.errors()[0]['msg']}")
            continue
        accepted[name] = value

    if not accepted:
        return settings
    logger.info(f"[CONFIG] Applied overrides: {', '.join(sorted(accepted))}")
    return CohostSettings.model_validate({**settings.model_dump(), **accepted})
