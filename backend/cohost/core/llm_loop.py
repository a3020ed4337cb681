"""Two-stage LLM chat loop.

Stage 1 asks the model which single action the unseen chat tail calls for.
Stage 2 asks a follow-up question for that action (what to remember, what
to say, whom to silence) or hands off to an operator extension. Whatever
happens, the history marker moves past the tail that was shown, so the
same messages are never classified twice.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from core.capabilities import LanguageModel
from core.errors import CohostError, ParseFailed
from core.events import ChatMessage, MessageSource
from core.executor import clean_llm_text
from core.history import MEMORY_USERNAME, HistoryBuffer

LOGGER = logging.getLogger("LLMLoop")

BASE_ACTIONS: dict[str, str] = {
    "nothing": "no action needed",
    "remember": "store information to memory",
    "respond": "send a reply to chat",
    "silence_user": "apply moderation mute",
}

_CLASSIFY_LINE = re.compile(r"action:\s*([\w-]+)(?:\s*,\s*reason:\s*(.*))?", re.IGNORECASE)
_LINE_PREFIX = re.compile(r"^\[\d{2}:\d{2}:\d{2}\]\s+\S+:\s*")

REMEMBER_PROMPT = (
    "What internal note do you want to remember? "
    "Write ONLY your memory note, without any prefixes or explanations."
)
RESPOND_PROMPT = (
    "What should you say in response? "
    "Write ONLY your response text, without any prefixes or explanations."
)
SILENCE_PROMPT = "What user must we silence? Name please."


@dataclass(frozen=True)
class Classification:
    action: str
    reason: str = ""


@dataclass(frozen=True)
class ExtensionContext:
    history_text: str
    send_chat: Callable[[str], Awaitable[bool]]


ExtensionHandler = Callable[[ExtensionContext, str, str], Awaitable[None]]


@dataclass
class ExtensionAction:
    name: str
    description: str
    handler: ExtensionHandler


@dataclass
class LoopSettings:
    persona: str = ""
    broadcaster: str = ""
    allowed_topics: list[str] = field(default_factory=list)
    disallowed_topics: list[str] = field(default_factory=list)
    model: str | None = None
    timeout: float = 30.0
    classify_max_tokens: int = 128
    classify_temperature: float = 0.5
    reply_max_tokens: int = 256
    reply_temperature: float = 0.7

    @classmethod
    def from_settings(cls, settings) -> LoopSettings:
        return cls(
            persona=settings.llm_persona,
            broadcaster=settings.broadcaster_login,
            allowed_topics=list(settings.llm_allowed_topics),
            disallowed_topics=list(settings.llm_disallowed_topics),
            model=settings.llm_model,
            timeout=settings.llm_timeout,
            classify_max_tokens=settings.llm_classify_max_tokens,
            classify_temperature=settings.llm_classify_temperature,
            reply_max_tokens=settings.llm_reply_max_tokens,
            reply_temperature=settings.llm_reply_temperature,
        )


def parse_classification(text: str, vocabulary: set[str] | frozenset[str]) -> Classification:
    """First ``action: <word>[, reason: <text>]`` line wins; unknown words mean nothing."""
    for line in text.splitlines():
        m = _CLASSIFY_LINE.search(line)
        if m is None:
            continue
        word = m.group(1).lower()
        reason = (m.group(2) or "").strip()
        if word not in vocabulary:
            LOGGER.info(f"[LLM] Unknown action '{word}', treating as nothing")
            return Classification("nothing", reason)
        return Classification(word, reason)
    LOGGER.debug("[LLM] No action line in classification, treating as nothing")
    return Classification("nothing")


def strip_line_prefix(text: str) -> str:
    """Models sometimes echo the history format; drop a leading ``[HH:MM:SS] user:``."""
    return _LINE_PREFIX.sub("", text.strip()).strip().strip('"').strip()


class LLMDecisionLoop:
    def __init__(
        self,
        history: HistoryBuffer,
        llm: LanguageModel,
        send_chat: Callable[[str], Awaitable[bool]] | None = None,
        settings: LoopSettings | None = None,
    ) -> None:
        self.history = history
        self.llm = llm
        self.send_chat = send_chat
        self.settings = settings or LoopSettings()
        self.enabled = True
        self._extensions: dict[str, ExtensionAction] = {}
        self._consume_seq = 0

    # ------------------------------------------------------------------
    # Extension actions
    # ------------------------------------------------------------------

    def register_extension(self, name: str, description: str, handler: ExtensionHandler) -> None:
        name = name.lower()
        if name in BASE_ACTIONS:
            raise ValueError(f"'{name}' is a built-in action")
        self._extensions[name] = ExtensionAction(name, description, handler)
        LOGGER.info(f"[LLM] Registered extension action '{name}'")

    @property
    def vocabulary(self) -> frozenset[str]:
        return frozenset(BASE_ACTIONS) | frozenset(self._extensions)

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def system_prompt(self) -> str:
        s = self.settings
        lines = [s.persona.strip()] if s.persona.strip() else []
        if s.broadcaster:
            lines.append(f"User {s.broadcaster} is chat owner, listen to them.")
        if s.allowed_topics:
            lines.append("Allowed in chat:")
            lines.extend(f"- {rule}" for rule in s.allowed_topics)
        if s.disallowed_topics:
            lines.append("Not allowed in chat (such messages must trigger: silence_user):")
            lines.extend(f"- {rule}" for rule in s.disallowed_topics)
        lines.append("Available actions:")
        lines.extend(f"- {name} → {desc}" for name, desc in BASE_ACTIONS.items())
        lines.extend(f"- {ext.name} → {ext.description}" for ext in self._extensions.values())
        return "\n".join(lines)

    def _messages(self, question: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt()},
            {
                "role": "user",
                "content": (
                    f"Here is the chat history:\n{self.history.format_for_llm()}\n\n{question}"
                ),
            },
        ]

    async def _ask(self, question: str, *, max_tokens: int, temperature: float) -> str:
        return await self.llm.chat(
            self._messages(question),
            max_tokens=max_tokens,
            temperature=temperature,
            model=self.settings.model,
            timeout=self.settings.timeout,
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def should_run(self) -> bool:
        return self.enabled and self.llm.status() and self.history.has_pending()

    async def run_once(self) -> Classification | None:
        """Classify the unseen tail once and act on it.

        Returns the classification, or ``None`` when nothing was pending.
        """
        if not self.history.has_pending():
            # Only suppressed entries are unseen; nothing to show the model
            self.history.mark_consumed()
            return None

        self._consume_seq = self.history.total_appended
        result: Classification | None = None
        try:
            raw = await self._ask(
                "What action do you need to perform on new messages and why? "
                "Answer in the form: action: <action>, reason: <reason>",
                max_tokens=self.settings.classify_max_tokens,
                temperature=self.settings.classify_temperature,
            )
            result = parse_classification(raw, self.vocabulary)
            LOGGER.info(f"[LLM] Decision: {result.action} ({result.reason or 'no reason'})")
            await self._act(result)
        except asyncio.CancelledError:
            raise
        except CohostError as e:
            LOGGER.warning(f"[LLM] Loop step failed: {e}")
        except Exception as e:
            LOGGER.exception(f"[LLM] Loop step crashed: {e}")
        finally:
            self.history.consume_through(self._consume_seq)
        return result

    async def _act(self, result: Classification) -> None:
        if result.action == "nothing":
            return
        if result.action == "remember":
            await self._remember()
        elif result.action == "respond":
            await self._respond()
        elif result.action == "silence_user":
            await self._silence()
        else:
            await self._run_extension(result)

    async def _reply(self, question: str) -> str:
        raw = await self._ask(
            question,
            max_tokens=self.settings.reply_max_tokens,
            temperature=self.settings.reply_temperature,
        )
        return strip_line_prefix(clean_llm_text(raw))

    async def _remember(self) -> None:
        note = await self._reply(REMEMBER_PROMPT)
        if not note:
            return
        seen_before = self.history.total_appended == self._consume_seq
        self.history.append(
            ChatMessage(
                username=MEMORY_USERNAME,
                user_id="",
                text=note,
                source=MessageSource.INJECTED_TRUSTED,
            )
        )
        # The note itself counts as seen unless live chat slipped in meanwhile
        if seen_before:
            self._consume_seq = self.history.total_appended
        LOGGER.info(f"[LLM] Remembered: {note[:80]}")

    async def _respond(self) -> None:
        text = await self._reply(RESPOND_PROMPT)
        if text:
            await self._send(text)

    async def _silence(self) -> None:
        answer = await self._reply(SILENCE_PROMPT)
        name = answer.split()[0].strip("@.,!?:;\"'") if answer.split() else ""
        if not name:
            raise ParseFailed("silence requested without a username")
        await self._send(f"Moderators, please silence for 10 minutes: {name}")

    async def _send(self, text: str) -> bool:
        if self.send_chat is None:
            LOGGER.warning(f"[LLM] No chat route, dropping: {text[:80]}")
            return False
        return await self.send_chat(text)

    async def _run_extension(self, result: Classification) -> None:
        ext = self._extensions.get(result.action)
        if ext is None:
            return
        last = self.history.last_visible()
        username = last.username if last else ""
        ctx = ExtensionContext(self.history.format_for_llm(), self._send)
        await ext.handler(ctx, username, result.reason)
