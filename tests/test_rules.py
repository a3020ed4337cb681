"""Tests for the chat rule engine."""

from __future__ import annotations

import pytest

from core.actions import Ban, NeuroAsk, Timeout, Voice, action_from_spec, instantiate
from core.events import ChatMessage, MessageSource
from core.rules import RuleEngine, compile_rules

BROADCASTER_ID = "1000"

RULES = [
    {"action": {"type": "ban"}, "patterns": [r"viewers", r"foo\.com"]},
    {"action": {"type": "timeout", "seconds": 30}, "patterns": [r"spam"]},
    {"action": {"type": "voice"}, "patterns": [r"^!voice\s+(.+)"]},
]


def _engine(specs=None) -> RuleEngine:
    return RuleEngine.from_specs(RULES if specs is None else specs, BROADCASTER_ID)


def _msg(text: str, user_id: str = "42", source=MessageSource.LIVE) -> ChatMessage:
    return ChatMessage(username="viewer", user_id=user_id, text=text, source=source)


# ── Matching ───────────────────────────────────────────────────────


class TestEvaluate:
    def test_all_patterns_must_match(self):
        engine = _engine()
        match = engine.evaluate(_msg("check VIEWERS at foo.com"))
        assert isinstance(match.action, Ban)
        assert match.suppress

    def test_partial_match_is_no_match(self):
        assert _engine().evaluate(_msg("more viewers please")) is None

    def test_first_matching_rule_wins(self):
        specs = [
            {"action": {"type": "timeout", "seconds": 5}, "patterns": [r"spam"]},
            {"action": {"type": "ban"}, "patterns": [r"spam"]},
        ]
        match = _engine(specs).evaluate(_msg("spam spam"))
        assert match.action == Timeout(seconds=5)

    def test_capture_group_becomes_input(self):
        match = _engine().evaluate(_msg("!voice hello there"))
        assert isinstance(match.action, Voice)
        assert match.action.text == "hello there"
        assert not match.suppress

    def test_broadcaster_is_exempt(self):
        assert _engine().evaluate(_msg("viewers foo.com", user_id=BROADCASTER_ID)) is None

    def test_trusted_injection_is_exempt(self):
        msg = _msg("viewers foo.com", source=MessageSource.INJECTED_TRUSTED)
        assert _engine().evaluate(msg) is None

    def test_empty_rule_set(self):
        assert _engine([]).evaluate(_msg("anything")) is None


# ── Compilation / reload ───────────────────────────────────────────


class TestReload:
    def test_rule_without_patterns_rejected(self):
        with pytest.raises(ValueError):
            compile_rules([{"action": {"type": "ban"}, "patterns": []}])

    def test_reload_swaps_rules(self):
        engine = _engine()
        assert engine.reload([{"action": {"type": "ban"}, "patterns": ["badword"]}])
        assert len(engine.rules) == 1
        assert engine.evaluate(_msg("viewers foo.com")) is None
        assert engine.evaluate(_msg("BADWORD")) is not None

    def test_broken_reload_keeps_current_rules(self):
        engine = _engine()
        assert not engine.reload([{"action": {"type": "explode"}, "patterns": ["x"]}])
        assert not engine.reload([{"action": {"type": "ban"}, "patterns": ["("]}])
        assert len(engine.rules) == 3


# ── Descriptors ────────────────────────────────────────────────────


class TestActions:
    def test_unknown_type(self):
        with pytest.raises(ValueError):
            action_from_spec({"type": "nope"})

    def test_bad_parameters(self):
        with pytest.raises(ValueError):
            action_from_spec({"type": "ban", "seconds": 3})

    def test_instantiate_fills_placeholders(self):
        template = action_from_spec({"type": "neuro_ask", "prompt": "{user} asks: {input}"})
        action = instantiate(template, user_input="why?", user_name="bob")
        assert action == NeuroAsk(prompt="bob asks: why?")

    def test_voice_options_parsed(self):
        action = action_from_spec(
            {"type": "voice", "voice_opts": {"language": "ru", "rate": 1.2}}
        )
        assert action.voice_opts.language == "ru"
        assert action.voice_opts.rate == 1.2
