"""Tests for settings validation and store overrides."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import (
    DEFAULT_PRESETS,
    DEFAULT_REWARDS,
    CohostSettings,
    apply_overrides,
    extension_action_spec,
)

REQUIRED = {
    "client_id": "cid",
    "client_secret": "secret",
    "bot_id": "2000",
    "broadcaster_id": "1000",
    "broadcaster_login": "streamer",
    "database_url": "postgresql://localhost/cohost",
}


def _make_settings(**overrides) -> CohostSettings:
    return CohostSettings(**{**REQUIRED, **overrides})


# ── Validation ─────────────────────────────────────────────────────


class TestSettings:
    def test_defaults(self):
        settings = _make_settings()
        assert settings.history_size == 50
        assert settings.vote_skip_threshold == 3
        assert set(settings.rewards) == set(DEFAULT_REWARDS)
        assert set(settings.presets) == set(DEFAULT_PRESETS)
        assert settings.tts_voices[0].language == "ru"

    def test_database_url_scheme(self):
        with pytest.raises(ValidationError):
            _make_settings(database_url="mysql://localhost/db")

    def test_bad_log_level_defaults_to_info(self):
        assert _make_settings(log_level="chatty").log_level == "INFO"
        assert _make_settings(log_level="debug").log_level == "DEBUG"

    @pytest.mark.parametrize("field", ["history_size", "vote_skip_threshold", "event_queue_max"])
    def test_positive_fields(self, field):
        with pytest.raises(ValidationError):
            _make_settings(**{field: 0})

    def test_rule_with_unknown_action(self):
        with pytest.raises(ValidationError):
            _make_settings(chat_rules=[{"action": {"type": "explode"}, "patterns": ["x"]}])

    def test_rule_with_bad_regex(self):
        with pytest.raises(ValidationError):
            _make_settings(chat_rules=[{"action": {"type": "ban"}, "patterns": ["("]}])

    def test_reward_with_unknown_action(self):
        reward = {"title": "X", "cost": 1, "action": {"type": "nope"}}
        with pytest.raises(ValidationError):
            _make_settings(rewards={"x": reward})

    def test_extension_actions(self):
        ext = {"hug": {"type": "sound_effect", "name": "woop", "description": "hug someone"}}
        assert _make_settings(llm_extension_actions=ext).llm_extension_actions == ext
        assert extension_action_spec(ext["hug"]) == {"type": "sound_effect", "name": "woop"}

        with pytest.raises(ValidationError):
            _make_settings(llm_extension_actions={"Hug!": {"type": "love"}})


# ── Overrides ──────────────────────────────────────────────────────


class TestOverrides:
    def test_applies_known_fields(self):
        settings = apply_overrides(
            _make_settings(), {"config.history_size": 20, "config.llm_model": "qwen"}
        )
        assert settings.history_size == 20
        assert settings.llm_model == "qwen"

    def test_skips_unknown_and_invalid(self):
        base = _make_settings()
        settings = apply_overrides(
            base,
            {"config.not_a_field": 1, "config.history_size": -1, "config.hate_cooldown": 15},
        )
        assert settings.history_size == 50
        assert settings.hate_cooldown == 15

    def test_no_overrides_returns_same_object(self):
        base = _make_settings()
        assert apply_overrides(base, {}) is base
