"""Single-consumer event dispatcher.

Transports call ``submit``; one consumer task takes events off a bounded
FIFO and runs each handler to completion before the next. Handlers may
await capability calls, during which new events keep queuing.

Chat messages get a synchronous intake step at submit time: they are
appended to history and checked against the rules right away, so the LLM
loop always sees the newest line and never sees a line that a moderation
rule caught.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from core.actions import ForwardToGameBridge, SoundEffect
from core.capabilities import ChatSender
from core.events import (
    CapabilityStatusChanged,
    ChatArrived,
    ChatMessage,
    Event,
    MessageSource,
    OperatorCommand,
    RedemptionArrived,
    ReloadRequested,
    SpeechFinal,
    Tick,
    TrackCompleted,
    TrackStarted,
)
from core.executor import ActionContext, ActionExecutor
from core.history import HistoryBuffer
from core.llm_loop import LLMDecisionLoop
from core.music import MusicQueue
from core.presets import PresetManager
from core.rewards import RedemptionRouter
from core.rules import RuleEngine, RuleMatch

LOGGER = logging.getLogger("Dispatcher")

RuleLoader = Callable[[], Awaitable[list[Any] | None]]


@dataclass
class _Item:
    event: Event
    rule_match: RuleMatch | None = None


class EventDispatcher:
    def __init__(
        self,
        *,
        history: HistoryBuffer,
        rules: RuleEngine,
        executor: ActionExecutor,
        router: RedemptionRouter,
        music: MusicQueue,
        llm_loop: LLMDecisionLoop,
        chat: ChatSender,
        broadcaster_login: str,
        broadcaster_id: str,
        bot_id: str = "",
        presets: PresetManager | None = None,
        supervisor: Any = None,
        rule_loader: RuleLoader | None = None,
        speech_trigger: str = r"^(работай|роботай)\s+(.+)$",
        max_pending: int = 1024,
        tick_interval: float = 5.0,
        forward_chat_to_game: bool = True,
        chat_sound: str = "",
    ) -> None:
        self.history = history
        self.rules = rules
        self.executor = executor
        self.router = router
        self.music = music
        self.llm_loop = llm_loop
        self.chat = chat
        self.presets = presets
        self.supervisor = supervisor
        self.rule_loader = rule_loader
        self.broadcaster_login = broadcaster_login
        self.broadcaster_id = broadcaster_id
        self.bot_id = bot_id
        self.speech_trigger = re.compile(speech_trigger, re.IGNORECASE)
        self.max_pending = max_pending
        self.tick_interval = tick_interval
        self.forward_chat_to_game = forward_chat_to_game
        self.chat_sound = chat_sound

        self.capability_status: dict[str, bool] = {}
        self.handled = 0
        self.dropped_ticks = 0

        self._pending: deque[_Item] = deque()
        self._cond = asyncio.Condition()
        self._consumer: asyncio.Task | None = None
        self._ticker: asyncio.Task | None = None
        self._wakers: set[asyncio.Task] = set()
        music.subscribe(self._announce_track)
        llm_loop.send_chat = self.send_chat

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def _intake(self, event: Event) -> _Item:
        """Cheap, non-awaiting step run the moment an event arrives."""
        if isinstance(event, ChatArrived):
            return _Item(event, self._intake_chat(event.message))
        return _Item(event)

    def _intake_chat(self, message: ChatMessage) -> RuleMatch | None:
        match = None if self._is_own(message) else self.rules.evaluate(message)
        self.history.append(message, suppressed=bool(match and match.suppress))
        return match

    def _is_own(self, message: ChatMessage) -> bool:
        return bool(self.bot_id) and message.user_id == self.bot_id

    async def submit(self, event: Event) -> None:
        """Queue an event, waiting while the queue is full of real events."""
        if isinstance(event, Tick):
            self.submit_tick()
            return
        item = self._intake(event)
        async with self._cond:
            while len(self._pending) >= self.max_pending:
                if self._drop_oldest_tick():
                    break
                LOGGER.warning(f"Event queue full ({self.max_pending}), holding producer")
                await self._cond.wait()
            self._pending.append(item)
            self._cond.notify_all()

    def submit_tick(self) -> bool:
        """Queue a Tick unless one is already waiting or the queue is full."""
        if any(isinstance(i.event, Tick) for i in self._pending):
            return False
        if len(self._pending) >= self.max_pending:
            self.dropped_ticks += 1
            return False
        self._pending.append(_Item(Tick()))
        self._wake()
        return True

    def _drop_oldest_tick(self) -> bool:
        for item in self._pending:
            if isinstance(item.event, Tick):
                self._pending.remove(item)
                self.dropped_ticks += 1
                return True
        return False

    def _wake(self) -> None:
        async def _notify() -> None:
            async with self._cond:
                self._cond.notify_all()

        try:
            task = asyncio.get_running_loop().create_task(_notify())
        except RuntimeError:
            return
        self._wakers.add(task)
        task.add_done_callback(self._wakers.discard)

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume())
        if self._ticker is None and self.tick_interval > 0:
            self._ticker = asyncio.create_task(self._tick_loop())

    async def stop(self) -> None:
        for task in (self._ticker, self._consumer):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._ticker = None
        self._consumer = None

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            self.submit_tick()

    async def _next(self) -> _Item:
        async with self._cond:
            while not self._pending:
                await self._cond.wait()
            item = self._pending.popleft()
            self._cond.notify_all()
            return item

    async def _consume(self) -> None:
        while True:
            try:
                item = await self._next()
                await self._process(item)
            except asyncio.CancelledError:
                break

    async def run_until_idle(self) -> None:
        """Drain the queue in the caller's task (tests, shutdown)."""
        while self._pending:
            item = self._pending.popleft()
            await self._process(item)
            async with self._cond:
                self._cond.notify_all()

    async def handle(self, event: Event) -> None:
        """Run one event immediately, intake included."""
        await self._process(self._intake(event))

    async def _process(self, item: _Item) -> None:
        try:
            await self._dispatch(item)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.exception(f"Handler for {type(item.event).__name__} failed: {e}")
        finally:
            self.handled += 1

    async def _dispatch(self, item: _Item) -> None:
        event = item.event
        if isinstance(event, ChatArrived):
            await self._on_chat(event.message, item.rule_match)
        elif isinstance(event, RedemptionArrived):
            await self.router.handle(event.redemption)
        elif isinstance(event, SpeechFinal):
            await self._on_speech(event)
        elif isinstance(event, TrackCompleted):
            await self.music.on_track_completed()
        elif isinstance(event, TrackStarted):
            await self.music.on_track_started(event.name)
        elif isinstance(event, Tick):
            await self._run_llm()
        elif isinstance(event, CapabilityStatusChanged):
            await self._on_status(event)
        elif isinstance(event, ReloadRequested):
            await self._reload_rules(event.key)
        elif isinstance(event, OperatorCommand):
            await self._on_operator(event)
        else:
            LOGGER.warning(f"Unhandled event {event!r}")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_chat(self, message: ChatMessage, match: RuleMatch | None) -> None:
        ctx = ActionContext(
            username=message.username,
            user_id=message.user_id,
            message_id=message.message_id,
            origin="chat",
        )
        if match is not None and match.suppress:
            await self.executor.execute(match.action, ctx)
            return
        if self._is_own(message):
            return

        if message.source is MessageSource.LIVE:
            if self.chat_sound:
                await self.executor.execute(SoundEffect(self.chat_sound), ctx)
            if self.forward_chat_to_game and not message.text.startswith("!"):
                await self.executor.execute(ForwardToGameBridge(line=message.text), ctx)

        if match is not None:
            await self.executor.execute(match.action, ctx)

        await self._run_llm()

    async def _run_llm(self) -> None:
        if self.llm_loop.should_run():
            await self.llm_loop.run_once()

    async def _on_speech(self, event: SpeechFinal) -> None:
        m = self.speech_trigger.match(event.phrase.strip())
        if m is None:
            LOGGER.debug(f"[SPEECH] Ignored: {event.phrase!r}")
            return
        text = m.group(m.lastindex or 0).strip()
        LOGGER.info(f"[SPEECH] Injecting ({event.language}, {event.confidence:.2f}): {text}")
        message = ChatMessage(
            username=self.broadcaster_login,
            user_id=self.broadcaster_id,
            text=text,
            source=MessageSource.INJECTED_TRUSTED,
        )
        await self._on_chat(message, self._intake_chat(message))

    async def _announce_track(self, name: str) -> None:
        await self.chat.send_action(f"📀 {name}")

    async def _on_status(self, event: CapabilityStatusChanged) -> None:
        previous = self.capability_status.get(event.name)
        self.capability_status[event.name] = event.up
        if previous != event.up:
            LOGGER.info(f"[STATUS] {event.name} is {'up' if event.up else 'down'}")
        if event.name == "music" and event.up:
            await self.music.query_status()
            await self.music.prime()

    async def _reload_rules(self, key: str) -> None:
        if self.rule_loader is None:
            return
        specs = await self.rule_loader()
        if specs is None:
            LOGGER.info(f"[RULE] Reload ({key or 'manual'}) found no stored rules")
            return
        self.rules.reload(specs)

    async def _on_operator(self, event: OperatorCommand) -> None:
        name, args = event.name, event.args
        if name == "preset" and args and self.presets is not None:
            ok = await self.presets.apply(args[0])
            await self.chat.send(f"Preset {args[0]} {'applied' if ok else 'failed'}")
        elif name == "skip":
            await self.music.skip()
        elif name == "module" and len(args) == 2 and self.supervisor is not None:
            await self.supervisor.set_enabled(args[0], args[1] == "on")
        elif name == "llm" and args:
            self.llm_loop.enabled = args[0] == "on"
            LOGGER.info(f"[LLM] Chat loop {'enabled' if self.llm_loop.enabled else 'disabled'}")
        elif name == "reload":
            await self._reload_rules("")
        else:
            LOGGER.warning(f"Unknown operator command {name} {args}")

    async def send_chat(self, text: str) -> bool:
        """Outgoing chat requested by the LLM loop."""
        return await self.chat.send(text)
