"""Chat-action rules: AND of patterns inside a rule, first matching rule wins."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from core.actions import ActionDescriptor, action_from_spec, is_moderation, with_captured_text
from core.events import ChatMessage, MessageSource

LOGGER = logging.getLogger("RuleEngine")


@dataclass(frozen=True)
class Rule:
    action: ActionDescriptor
    patterns: tuple[re.Pattern[str], ...]

    def match(self, text: str) -> tuple[bool, str | None]:
        """Return (matched, first capture group seen across the patterns)."""
        captured: str | None = None
        for pattern in self.patterns:
            m = pattern.search(text)
            if m is None:
                return False, None
            if captured is None and m.groups():
                captured = m.group(1)
        return True, captured


@dataclass(frozen=True)
class RuleMatch:
    action: ActionDescriptor
    # Moderation matches stop every other reaction to the message
    suppress: bool


def compile_rules(specs: Iterable[Any]) -> list[Rule]:
    """Compile rule specs (``RuleSpec`` models or plain dicts)."""
    rules: list[Rule] = []
    for spec in specs:
        data = spec.model_dump() if hasattr(spec, "model_dump") else dict(spec)
        action = action_from_spec(data["action"])
        patterns = tuple(re.compile(p, re.IGNORECASE) for p in data["patterns"])
        if not patterns:
            raise ValueError("a chat rule needs at least one pattern")
        rules.append(Rule(action, patterns))
    return rules


class RuleEngine:
    def __init__(self, rules: list[Rule], broadcaster_id: str) -> None:
        self._rules = tuple(rules)
        self.broadcaster_id = broadcaster_id

    @classmethod
    def from_specs(cls, specs: Iterable[Any], broadcaster_id: str) -> RuleEngine:
        return cls(compile_rules(specs), broadcaster_id)

    @property
    def rules(self) -> tuple[Rule, ...]:
        return self._rules

    def reload(self, specs: Iterable[Any]) -> bool:
        """Swap in a new rule set; a broken set leaves the current one active."""
        try:
            rules = compile_rules(specs)
        except (ValueError, KeyError, TypeError, re.error) as e:
            LOGGER.error(f"[RULE] Reload rejected, keeping {len(self._rules)} rule(s): {e}")
            return False
        self._rules = tuple(rules)
        LOGGER.info(f"[RULE] Loaded {len(self._rules)} rule(s)")
        return True

    def evaluate(self, message: ChatMessage) -> RuleMatch | None:
        if message.source is MessageSource.INJECTED_TRUSTED:
            return None
        if message.user_id == self.broadcaster_id:
            return None

        for rule in self._rules:
            matched, captured = rule.match(message.text)
            if not matched:
                continue
            action = with_captured_text(rule.action, captured, message.text)
            suppress = is_moderation(action)
            if suppress:
                LOGGER.info(f"[RULE] {message.username}: {type(action).__name__} on {message.text!r}")
            return RuleMatch(action, suppress)
        return None
