"""Twitch Bot class: chat and redemption transport for the dispatcher."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import asyncpg
import twitchio
from twitchio.ext import commands

from core.config import COMPONENTS_DIR
from core.events import ChatArrived, ChatMessage, Redemption, RedemptionArrived, ReloadRequested
from core.pg_listener import pg_listen
from core.subscriptions import get_chat_subscription, get_redemption_subscription
from shared.repositories.kv_store import KeyValueRepository
from shared.repositories.token import TokenRepository

if TYPE_CHECKING:
    from core.dispatcher import EventDispatcher

LOGGER: logging.Logger = logging.getLogger("Bot")

# kv_store keys whose change should reach the running dispatcher
RELOAD_KEYS = ("chat_rules",)
RELOAD_PREFIXES = ("config.",)


class Bot(commands.Bot):
    token_database: asyncpg.Pool

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        bot_id: str,
        broadcaster_id: str,
        token_database: asyncpg.Pool,
        dispatcher: EventDispatcher,
    ) -> None:
        self.token_database = token_database
        self.dispatcher = dispatcher
        self.tokens = TokenRepository(token_database)
        self.broadcaster_id = broadcaster_id
        self._background: set[asyncio.Task] = set()

        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            bot_id=bot_id,
            owner_id=broadcaster_id,
            prefix="!",
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def setup_hook(self) -> None:
        if COMPONENTS_DIR.exists():
            for file in COMPONENTS_DIR.glob("*.py"):
                if file.stem == "__init__":
                    continue
                module_name = f"components.{file.stem}"
                try:
                    await self.load_module(module_name)
                except Exception as e:
                    LOGGER.error(f"Failed to load component {module_name}: {e}")

        await self.subscribe_channel_events()
        self._spawn(pg_listen(self.token_database, "kv_change", self._handle_kv_change))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def subscribe_channel_events(self) -> None:
        try:
            await self.subscribe_websocket(
                payload=get_chat_subscription(self.broadcaster_id, self.bot_id), as_bot=True
            )
            LOGGER.info(f"Subscribed to chat for channel: {self.broadcaster_id}")
        except Exception as e:
            LOGGER.exception(f"Failed to subscribe to chat: {e}")

        try:
            await self.subscribe_websocket(
                payload=get_redemption_subscription(self.broadcaster_id),
                token_for=self.broadcaster_id,
            )
            LOGGER.info(f"Subscribed to redemptions for channel: {self.broadcaster_id}")
        except Exception as e:
            LOGGER.exception(
                f"Failed to subscribe to redemptions (broadcaster token missing?): {e}"
            )

    async def close(self, **options) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        await super().close(**options)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def event_ready(self) -> None:
        LOGGER.info("Successfully logged in as: %s", self.bot_id)

    async def event_eventsub_error(self, error: Exception) -> None:
        LOGGER.error(f"EventSub error: {error}")

    async def event_oauth_authorized(
        self, payload: twitchio.authentication.UserTokenPayload
    ) -> None:
        await self.add_token(payload.access_token, payload.refresh_token)
        if payload.user_id == self.bot_id:
            LOGGER.info("Bot account authorized")
        elif payload.user_id == self.broadcaster_id:
            LOGGER.info("Broadcaster account authorized, resubscribing")
            await self.subscribe_channel_events()

    async def event_message(self, payload: twitchio.ChatMessage) -> None:
        if payload.broadcaster is None or payload.broadcaster.id != self.broadcaster_id:
            LOGGER.debug("[BLOCK] Ignoring message outside the broadcaster's channel")
            return

        LOGGER.debug(f"[{payload.chatter.name}#{payload.broadcaster.name}]: {payload.text}")
        message = ChatMessage(
            username=payload.chatter.name or "",
            user_id=payload.chatter.id,
            text=payload.text,
            message_id=payload.id,
        )
        await self.dispatcher.submit(ChatArrived(message))

        if payload.text and payload.text.startswith("!"):
            parts = payload.text.split(maxsplit=1)
            parts[0] = parts[0].lower()
            payload.text = " ".join(parts)
        await super().event_message(payload)

    async def event_custom_redemption_add(
        self, payload: twitchio.ChannelPointsRedemptionAdd
    ) -> None:
        LOGGER.info(f"[REDEEM] {payload.user.name} redeemed '{payload.reward.title}'")
        redemption = Redemption(
            redemption_id=payload.id,
            reward_id=payload.reward.id,
            user_name=payload.user.name or "",
            user_input=payload.user_input or "",
            user_id=payload.user.id,
        )
        await self.dispatcher.submit(RedemptionArrived(redemption))

    # ------------------------------------------------------------------
    # Token management
    # ------------------------------------------------------------------

    async def add_token(
        self, token: str, refresh: str
    ) -> twitchio.authentication.ValidateTokenPayload:
        resp: twitchio.authentication.ValidateTokenPayload = await super().add_token(token, refresh)

        if resp.user_id:
            for attempt in range(1, 4):
                try:
                    await self.tokens.upsert_token(resp.user_id, token, refresh)
                    break
                except Exception as e:
                    if attempt < 3:
                        LOGGER.warning(f"save_token attempt {attempt}/3 failed: {e}")
                        await asyncio.sleep(2)
                    else:
                        LOGGER.error(f"save_token failed after 3 attempts: {e}")

        LOGGER.info(f"Added token to database: {resp.login or 'unknown'} ({resp.user_id})")
        return resp

    async def load_tokens(self, path: str | None = None) -> None:
        for tok in await self.tokens.list_tokens():
            try:
                await self.add_token(tok.token, tok.refresh)
            except twitchio.exceptions.InvalidTokenException as e:
                LOGGER.warning(
                    f"Invalid token for user_id {tok.user_id}, skipping. "
                    f"User needs to re-authenticate: {e}"
                )

    async def save_tokens(self, path: str | None = None) -> None:
        # Tokens are persisted as they are added
        return

    # ------------------------------------------------------------------
    # PG NOTIFY handlers
    # ------------------------------------------------------------------

    async def _handle_kv_change(self, connection, pid, channel, payload) -> None:
        try:
            key = payload or ""
            KeyValueRepository.invalidate(key)
            LOGGER.debug(f"[NOTIFY] kv_store change: {key}")
            if key in RELOAD_KEYS or key.startswith(RELOAD_PREFIXES):
                LOGGER.info(f"[NOTIFY] {key} changed, requesting reload")
                await self.dispatcher.submit(ReloadRequested(key))
        except Exception as e:
            LOGGER.exception(f"[NOTIFY] Error handling kv_change: {e}")
