"""Channel-point rewards: registry, startup reconciliation, redemption routing."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from core.actions import ActionDescriptor, NeuroAsk, QueueMusic, Voice, action_from_spec, instantiate
from core.capabilities import ChatSender, Platform, RemoteReward
from core.errors import CohostError, Throttled, UnknownReward, ValidationFailed
from core.events import Redemption
from core.executor import ActionContext, ActionExecutor
from core.guards import RewardCooldowns
from core.music import MusicQueue

LOGGER = logging.getLogger("Rewards")

FULFILLED = "FULFILLED"
CANCELED = "CANCELED"

REWARDS_CACHE_KEY = "rewards_cache"


@dataclass
class Reward:
    reward_id: str
    key: str
    title: str
    cost: int
    enabled: bool
    action_template: ActionDescriptor
    cooldown_seconds: int = 0
    user_input_required: bool = False


class RewardRegistry:
    """reward_id -> Reward, plus the reverse key -> Reward index."""

    def __init__(self) -> None:
        self._by_id: dict[str, Reward] = {}
        self._by_key: dict[str, Reward] = {}

    def register(self, reward: Reward) -> None:
        previous = self._by_key.get(reward.key)
        if previous is not None:
            self._by_id.pop(previous.reward_id, None)
        self._by_id[reward.reward_id] = reward
        self._by_key[reward.key] = reward

    def get(self, reward_id: str) -> Reward | None:
        return self._by_id.get(reward_id)

    def get_by_key(self, key: str) -> Reward | None:
        return self._by_key.get(key)

    def all(self) -> list[Reward]:
        return list(self._by_key.values())

    def snapshot(self) -> dict[str, str]:
        return {reward_id: r.key for reward_id, r in self._by_id.items()}

    def __len__(self) -> int:
        return len(self._by_id)


def _create_payload(spec: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": spec.title,
        "cost": spec.cost,
        "prompt": spec.prompt,
        "background_color": spec.background_color,
        "is_user_input_required": spec.user_input_required,
        "is_enabled": False,
    }
    if spec.cooldown_seconds > 0:
        payload["is_global_cooldown_enabled"] = True
        payload["global_cooldown_seconds"] = spec.cooldown_seconds
    return payload


async def reconcile_rewards(
    platform: Platform,
    specs: Mapping[str, Any],
    store: Any,
    registry: RewardRegistry | None = None,
) -> RewardRegistry:
    """Adopt platform rewards whose title matches a local key, create the rest.

    Matching is by title; the id -> key snapshot written to the store is used
    only to warn when a configured title no longer matches a reward we made.
    """
    registry = registry or RewardRegistry()
    remote = await platform.list_rewards()
    by_title: dict[str, RemoteReward] = {r.title: r for r in remote}
    by_id: dict[str, RemoteReward] = {r.reward_id: r for r in remote}

    try:
        cached: dict[str, str] = await store.get(REWARDS_CACHE_KEY, {}) or {}
    except Exception as e:
        LOGGER.warning(f"[REWARD] Could not read reward snapshot: {e}")
        cached = {}

    for key, spec in specs.items():
        template = action_from_spec(spec.action)
        existing = by_title.get(spec.title)
        if existing is None:
            stale = [rid for rid, k in cached.items() if k == key and rid in by_id]
            for rid in stale:
                LOGGER.warning(
                    f"[REWARD] '{key}' was '{by_id[rid].title}' ({rid}); title changed to "
                    f"'{spec.title}', a second reward will be created"
                )
            try:
                existing = await platform.create_reward(_create_payload(spec))
            except CohostError as e:
                LOGGER.error(f"[REWARD] Failed to create '{spec.title}': {e}")
                continue
            LOGGER.info(f"[REWARD] Created '{spec.title}' ({existing.reward_id})")
        else:
            LOGGER.debug(f"[REWARD] Adopted '{spec.title}' ({existing.reward_id})")

        registry.register(
            Reward(
                reward_id=existing.reward_id,
                key=key,
                title=spec.title,
                cost=spec.cost,
                enabled=existing.is_enabled,
                action_template=template,
                cooldown_seconds=spec.cooldown_seconds,
                user_input_required=spec.user_input_required,
            )
        )

    try:
        await store.set(REWARDS_CACHE_KEY, registry.snapshot())
    except Exception as e:
        LOGGER.warning(f"[REWARD] Could not store reward snapshot: {e}")

    LOGGER.info(f"[REWARD] Registry ready with {len(registry)} reward(s)")
    return registry


async def apply_active_rewards(
    platform: Platform, registry: RewardRegistry, active: set[str] | frozenset[str]
) -> None:
    """Enable exactly the rewards in ``active``; only changed ones are touched."""
    for reward in registry.all():
        wanted = reward.key in active
        if reward.enabled == wanted:
            continue
        try:
            await platform.update_reward(reward.reward_id, {"is_enabled": wanted})
        except CohostError as e:
            LOGGER.warning(f"[REWARD] Could not toggle '{reward.key}': {e}")
            continue
        reward.enabled = wanted
        LOGGER.info(f"[REWARD] {'Enabled' if wanted else 'Disabled'} '{reward.key}'")


class RedemptionRouter:
    def __init__(
        self,
        registry: RewardRegistry,
        executor: ActionExecutor,
        platform: Platform,
        chat: ChatSender,
        music: MusicQueue,
        cooldowns: RewardCooldowns | None = None,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.platform = platform
        self.chat = chat
        self.music = music
        self.cooldowns = cooldowns or RewardCooldowns()

    async def handle(self, redemption: Redemption) -> str:
        """Run a redemption and settle it; the platform is told exactly once."""
        try:
            status = await self._run(redemption)
        except asyncio.CancelledError:
            raise
        except (UnknownReward, Throttled) as e:
            LOGGER.info(f"[REDEEM] {redemption.redemption_id} refused: {e}")
            status = CANCELED
        except Exception as e:
            LOGGER.exception(f"[REDEEM] {redemption.redemption_id} crashed: {e}")
            status = CANCELED

        try:
            await self.platform.fulfill_redemption(
                redemption.reward_id, redemption.redemption_id, status
            )
        except CohostError as e:
            LOGGER.warning(f"[REDEEM] Could not mark {redemption.redemption_id} {status}: {e}")
        return status

    async def _run(self, redemption: Redemption) -> str:
        reward = self.registry.get(redemption.reward_id)
        if reward is None:
            raise UnknownReward(redemption.reward_id)
        if self.cooldowns.is_on_cooldown(reward.key):
            raise Throttled(reward.key, self.cooldowns.remaining(reward.key))

        action = instantiate(
            reward.action_template,
            user_input=redemption.user_input.strip(),
            user_name=redemption.user_name,
        )
        try:
            self._validate(action)
        except ValidationFailed as e:
            LOGGER.info(f"[REDEEM] '{reward.key}' by {redemption.user_name} invalid: {e.field}")
            await self.chat.send_whisper(redemption.user_name, e.message)
            return CANCELED

        self.cooldowns.record(reward.key, reward.cooldown_seconds)
        ctx = ActionContext(
            username=redemption.user_name, user_id=redemption.user_id, origin="redemption"
        )
        ok = await self.executor.execute(action, ctx)
        LOGGER.info(
            f"[REDEEM] '{reward.key}' by {redemption.user_name}: {'ok' if ok else 'failed'}"
        )
        return FULFILLED if ok else CANCELED

    def _validate(self, action: ActionDescriptor) -> None:
        if isinstance(action, QueueMusic):
            self.music.validate(action.url)
        elif isinstance(action, Voice) and not action.text.strip():
            raise ValidationFailed("text", "Please write the text to read aloud.")
        elif isinstance(action, NeuroAsk) and not action.prompt.strip():
            raise ValidationFailed("prompt", "Please write a question for Neuro.")
