import asyncio
import logging
from typing import Any

from core.actions import action_from_spec
from core.bot import Bot
from core.capabilities import Platform
from core.config import CohostSettings, apply_overrides, extension_action_spec, get_settings
from core.dispatcher import EventDispatcher
from core.errors import CohostError
from core.events import Event, TrackCompleted, TrackStarted
from core.executor import (
    ActionExecutor,
    Capabilities,
    EffectSettings,
    extension_handler,
)
from core.guards import RewardCooldowns
from core.health_server import HealthCheckServer
from core.history import HistoryBuffer
from core.llm_loop import LLMDecisionLoop, LoopSettings
from core.logging import setup_logging
from core.music import MusicQueue
from core.presets import PresetManager
from core.rewards import RedemptionRouter, RewardRegistry, reconcile_rewards
from core.rules import RuleEngine
from core.supervisor import Supervisor
from core.throttle import ThrottleStore
from services.chat import ChatChannel
from services.game_bridge import GameBridge
from services.llm import LLMClient
from services.music_transport import MusicTransport
from services.sound import SoundPlayer
from services.speech import SpeechSource
from services.tts import PollyTTS
from services.twitch_api import HelixClient
from shared.database import DatabaseManager, PoolConfig
from shared.deck import PersistentDeck
from shared.migrations.runner import MigrationRunner
from shared.repositories.kv_store import KeyValueRepository
from shared.repositories.token import TokenRepository

LOGGER: logging.Logger = logging.getLogger("Cohost")

MUSIC_QUEUE_KEY = "music_queue"
CHAT_RULES_KEY = "chat_rules"


async def load_settings(store: KeyValueRepository, settings: CohostSettings) -> CohostSettings:
    try:
        overrides = await store.list_prefix("config.")
    except Exception as e:
        LOGGER.warning(f"[CONFIG] Could not read overrides, using environment only: {e}")
        return settings
    return apply_overrides(settings, overrides)


async def prepare_rewards(
    platform: Platform, settings: CohostSettings, store: KeyValueRepository
) -> RewardRegistry:
    try:
        return await reconcile_rewards(platform, settings.rewards, store)
    except CohostError as e:
        LOGGER.error(f"[REDEEM] Reward reconciliation failed, redemptions disabled: {e}")
        return RewardRegistry()


def register_extensions(
    loop: LLMDecisionLoop, executor: ActionExecutor, specs: dict[str, dict[str, Any]]
) -> None:
    for name, spec in specs.items():
        template = action_from_spec(extension_action_spec(spec))
        description = spec.get("description") or f"perform {spec['type']}"
        try:
            loop.register_extension(name, description, extension_handler(executor, template))
        except ValueError as e:
            LOGGER.warning(f"[LLM] Skipping extension '{name}': {e}")


def main() -> None:
    env_settings = get_settings()
    setup_logging(env_settings.log_level)

    async def runner() -> None:
        db = DatabaseManager(env_settings.database_url, PoolConfig())
        await db.connect()

        dispatcher: EventDispatcher | None = None

        async def submit(event: Event) -> None:
            if dispatcher is not None:
                await dispatcher.submit(event)

        cleanup: list[Any] = []
        try:
            await MigrationRunner(db.pool).run_pending()
            store = KeyValueRepository(db.pool)
            settings = await load_settings(store, env_settings)

            helix = HelixClient(
                client_id=settings.client_id,
                client_secret=settings.client_secret,
                broadcaster_id=settings.broadcaster_id,
                bot_id=settings.bot_id,
                tokens=TokenRepository(db.pool),
            )
            cleanup.append(helix.close)
            chat = ChatChannel(helix)
            llm = LLMClient(
                settings.llm_base_url,
                settings.llm_model,
                api_key=settings.llm_api_key,
                timeout=settings.llm_timeout,
                health_interval=settings.llm_health_interval,
            )
            cleanup.append(llm.close)
            game = GameBridge(settings.game_bridge_url)
            speech = SpeechSource(settings.speech_url, submit)
            sound = SoundPlayer(settings.audio_dir, ffplay=settings.ffplay_path)
            cleanup.append(sound.close)
            tts = PollyTTS(
                settings.tts_voices,
                region=settings.aws_region,
                fallback_language=settings.tts_fallback_language,
            )
            music_transport = MusicTransport(on_status=submit)

            deck: PersistentDeck[str] = PersistentDeck(store, MUSIC_QUEUE_KEY)
            await deck.load()
            deck.start()
            cleanup.append(deck.close)

            music = MusicQueue(
                deck,
                music_transport,
                vote_threshold=settings.vote_skip_threshold,
                fallback_url=settings.fallback_music_url,
                initial_song_name=settings.initial_song_name,
                url_pattern=settings.music_url_pattern,
            )
            throttle = ThrottleStore(
                hate_cooldown=settings.hate_cooldown,
                love_protection=settings.love_protection,
                broadcaster=settings.broadcaster_login,
            )
            executor = ActionExecutor(
                Capabilities(
                    platform=helix, chat=chat, llm=llm, tts=tts, sound=sound, game=game
                ),
                throttle,
                music,
                EffectSettings.from_settings(settings),
            )
            cleanup.append(executor.drain)

            registry = await prepare_rewards(helix, settings, store)
            presets = PresetManager(helix, registry, store, settings.presets)
            try:
                await presets.restore_rewards()
            except CohostError as e:
                LOGGER.warning(f"[PRESET] Could not restore reward states: {e}")
            router = RedemptionRouter(registry, executor, helix, chat, music, RewardCooldowns())

            history = HistoryBuffer(settings.history_size)
            stored_rules = await store.get(CHAT_RULES_KEY)
            rules = RuleEngine.from_specs(settings.chat_rules, settings.broadcaster_id)
            if stored_rules is not None:
                rules.reload(stored_rules)

            llm_loop = LLMDecisionLoop(history, llm, settings=LoopSettings.from_settings(settings))
            llm_loop.enabled = settings.llm_chat_monitoring
            register_extensions(llm_loop, executor, settings.llm_extension_actions)

            supervisor = Supervisor(store, on_status=submit, reconnect_delay=settings.reconnect_delay)
            for cap in (llm, game, speech):
                supervisor.register(cap)

            async def load_rules() -> list[Any] | None:
                return await store.get(CHAT_RULES_KEY)

            dispatcher = EventDispatcher(
                history=history,
                rules=rules,
                executor=executor,
                router=router,
                music=music,
                llm_loop=llm_loop,
                chat=chat,
                broadcaster_login=settings.broadcaster_login,
                broadcaster_id=settings.broadcaster_id,
                bot_id=settings.bot_id,
                presets=presets,
                supervisor=supervisor,
                rule_loader=load_rules,
                speech_trigger=settings.speech_trigger_pattern,
                max_pending=settings.event_queue_max,
                tick_interval=settings.tick_interval,
                forward_chat_to_game=settings.forward_chat_to_game,
                chat_sound=settings.chat_sound,
            )

            async def on_music_start(name: Any) -> None:
                await submit(TrackStarted(str(name or "")))

            async def on_music_done(url: Any) -> None:
                await submit(TrackCompleted(str(url or "")))

            music_transport.on_reply("music_start", on_music_start)
            music_transport.on_reply("music_done", on_music_done)
            music_transport.on_reply("status_reply", music.on_status_reply)

            dispatcher.start()
            cleanup.append(dispatcher.stop)
            await supervisor.start()
            cleanup.append(supervisor.stop)

            health = HealthCheckServer(
                dispatcher,
                supervisor,
                music_transport,
                host=settings.health_host,
                port=settings.health_port,
            )
            await health.start()
            cleanup.append(health.stop)

            LOGGER.info(
                f"Starting co-host for {settings.broadcaster_login} "
                f"({len(registry)} rewards, {len(rules.rules)} rules)"
            )
            async with Bot(
                client_id=settings.client_id,
                client_secret=settings.client_secret,
                bot_id=settings.bot_id,
                broadcaster_id=settings.broadcaster_id,
                token_database=db.pool,
                dispatcher=dispatcher,
            ) as bot:
                await bot.start()
        finally:
            for close in reversed(cleanup):
                try:
                    await close()
                except Exception as e:
                    LOGGER.warning(f"Shutdown step {getattr(close, '__qualname__', close)} failed: {e}")
            await db.disconnect()

    try:
        asyncio.run(runner())
    except KeyboardInterrupt:
        LOGGER.warning("Shutting down due to KeyboardInterrupt...")


if __name__ == "__main__":
    main()
