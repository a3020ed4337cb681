"""Core modules for the stream co-host."""

from .config import (
    AUDIO_DIR,
    BOT_SCOPES,
    BROADCASTER_SCOPES,
    COHOST_DIR,
    COMPONENTS_DIR,
    apply_overrides,
    get_settings,
)
from .errors import CohostError
from .guards import RewardCooldowns, is_owner
from .health_server import HealthCheckServer
from .logging import setup_logging
from .pg_listener import pg_listen
from .subscriptions import get_chat_subscription, get_redemption_subscription

__all__ = [
    # Settings
    "get_settings",
    "apply_overrides",
    # Path Constants
    "COHOST_DIR",
    "COMPONENTS_DIR",
    "AUDIO_DIR",
    # Scope Constants
    "BOT_SCOPES",
    "BROADCASTER_SCOPES",
    # Setup functions
    "setup_logging",
    # Services
    "HealthCheckServer",
    # Twitch specific
    "get_chat_subscription",
    "get_redemption_subscription",
    # Guards
    "is_owner",
    "RewardCooldowns",
    # Errors
    "CohostError",
    # PG Listener
    "pg_listen",
]
