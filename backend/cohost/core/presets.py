"""Stream presets: channel metadata plus the set of rewards that should be live."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from core.capabilities import Platform
from core.errors import CohostError
from core.rewards import RewardRegistry, apply_active_rewards

LOGGER = logging.getLogger("Presets")

CURRENT_PRESET_KEY = "preset.current"


class PresetManager:
    def __init__(
        self,
        platform: Platform,
        registry: RewardRegistry,
        store: Any,
        presets: Mapping[str, Any],
    ) -> None:
        self.platform = platform
        self.registry = registry
        self.store = store
        self.presets = dict(presets)
        self.current: str | None = None

    async def load_current(self) -> str | None:
        try:
            name = await self.store.get(CURRENT_PRESET_KEY)
        except Exception as e:
            LOGGER.warning(f"[PRESET] Could not read current preset: {e}")
            name = None
        self.current = name if name in self.presets else None
        return self.current

    async def restore_rewards(self) -> None:
        """Re-apply the stored preset's reward set; with no preset, disable all."""
        name = await self.load_current()
        active = set(self.presets[name].rewards_active) if name else set()
        await apply_active_rewards(self.platform, self.registry, active)
        LOGGER.info(f"[PRESET] Restored rewards for '{name or 'none'}'")

    async def apply(self, name: str) -> bool:
        preset = self.presets.get(name)
        if preset is None:
            LOGGER.warning(f"[PRESET] Unknown preset '{name}'")
            return False

        try:
            await self.platform.update_channel(
                title=preset.title, game_id=preset.game_id, tags=list(preset.tags)
            )
        except CohostError as e:
            LOGGER.error(f"[PRESET] Channel update for '{name}' failed: {e}")
            return False

        await apply_active_rewards(self.platform, self.registry, set(preset.rewards_active))
        self.current = name
        try:
            await self.store.set(CURRENT_PRESET_KEY, name)
        except Exception as e:
            LOGGER.warning(f"[PRESET] Applied '{name}' but could not persist it: {e}")
        LOGGER.info(f"[PRESET] Applied '{name}'")
        return True
