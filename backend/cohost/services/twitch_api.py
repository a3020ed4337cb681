"""Twitch Helix client for the operator's channel.

Moderation, rewards, channel metadata and the broadcaster-side redemption
calls use the broadcaster's user token; chat messages and whispers are sent
as the bot account. Tokens come from the ``tokens`` table and are refreshed
(and written back) the first time Helix answers 401.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from core.capabilities import RemoteReward
from core.errors import NotConnected, RpcFailed, RpcTimeout, TransportDown
from shared.repositories.token import TokenRepository

logger = logging.getLogger(__name__)

HELIX_BASE = "https://api.twitch.tv/helix"
OAUTH_BASE = "https://id.twitch.tv/oauth2"


@dataclass
class TokenRefreshResult:
    """Result of a token refresh operation."""

    success: bool
    access_token: str | None = None
    refresh_token: str | None = None
    error: str | None = None


def _remote_reward(data: dict[str, Any]) -> RemoteReward:
    cooldown = data.get("global_cooldown_setting") or {}
    return RemoteReward(
        reward_id=data["id"],
        title=data["title"],
        cost=data.get("cost", 0),
        is_enabled=data.get("is_enabled", True),
        prompt=data.get("prompt", ""),
        is_user_input_required=data.get("is_user_input_required", False),
        global_cooldown_seconds=(
            cooldown.get("global_cooldown_seconds", 0) if cooldown.get("is_enabled") else 0
        ),
    )


class HelixClient:
    """Typed Helix RPCs over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        broadcaster_id: str,
        bot_id: str,
        tokens: TokenRepository,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        if not client_id or not client_secret:
            raise ValueError("Twitch client_id and client_secret are required")
        self.client_id = client_id
        self.client_secret = client_secret
        self.broadcaster_id = broadcaster_id
        self.bot_id = bot_id
        self.tokens = tokens
        self._http = http or httpx.AsyncClient(timeout=10.0)
        self._user_ids: dict[str, str] = {}
        self._refresh_lock = asyncio.Lock()

    async def close(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Client-Id": self.client_id}

    async def _access_token(self, user_id: str) -> str:
        record = await self.tokens.get_token(user_id)
        if record is None:
            raise NotConnected(f"twitch token for {user_id}")
        return record.token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        as_user: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call Helix as ``as_user``; one refresh-and-retry on 401."""
        for attempt in (1, 2):
            token = await self._access_token(as_user)
            try:
                response = await self._http.request(
                    method,
                    f"{HELIX_BASE}/{path}",
                    params=params,
                    json=json,
                    headers=self._headers(token),
                )
            except httpx.TimeoutException as e:
                raise RpcTimeout(f"Helix {method} /{path} timed out") from e
            except httpx.HTTPError as e:
                raise TransportDown(f"helix ({type(e).__name__})") from e

            if response.status_code == 401 and attempt == 1:
                if await self._refresh_user_token(as_user):
                    continue
            if response.status_code >= 400:
                logger.warning(f"Helix {method} /{path} -> {response.status_code}")
                raise RpcFailed(response.status_code, response.text)
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()
        raise RpcFailed(401, "unauthorized after token refresh")

    async def _refresh_user_token(self, user_id: str) -> bool:
        async with self._refresh_lock:
            record = await self.tokens.get_token(user_id)
            if record is None:
                return False
            result = await self.refresh_access_token(record.refresh)
            if not result.success or not result.access_token:
                logger.error(f"Token refresh for {user_id} failed: {result.error}")
                return False
            await self.tokens.upsert_token(
                user_id, result.access_token, result.refresh_token or record.refresh
            )
            logger.info(f"Refreshed Helix token for {user_id}")
            return True

    async def refresh_access_token(self, refresh_token: str) -> TokenRefreshResult:
        """Exchange a refresh token; Twitch may rotate the refresh token too."""
        try:
            response = await self._http.post(
                f"{OAUTH_BASE}/token",
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                },
            )
        except httpx.TimeoutException:
            logger.error("Timeout while refreshing token")
            return TokenRefreshResult(success=False, error="timeout")
        except httpx.HTTPError as e:
            return TokenRefreshResult(success=False, error=str(e))

        if response.status_code != 200:
            error_data = response.json() if response.content else {}
            return TokenRefreshResult(
                success=False,
                error=error_data.get("message", f"HTTP {response.status_code}"),
            )

        data = response.json()
        if not data.get("access_token"):
            return TokenRefreshResult(success=False, error="No access_token in refresh response")
        return TokenRefreshResult(
            success=True,
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user_id(self, login: str) -> str | None:
        login = login.lower().lstrip("@")
        if login in self._user_ids:
            return self._user_ids[login]
        data = await self._request("GET", "users", as_user=self.bot_id, params={"login": login})
        users = data.get("data", [])
        if not users:
            logger.warning(f"No user found for login {login}")
            return None
        self._user_ids[login] = users[0]["id"]
        return users[0]["id"]

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    def _mod_params(self) -> dict[str, str]:
        return {"broadcaster_id": self.broadcaster_id, "moderator_id": self.broadcaster_id}

    async def ban(self, user_id: str, reason: str) -> None:
        await self._request(
            "POST",
            "moderation/bans",
            as_user=self.broadcaster_id,
            params=self._mod_params(),
            json={"data": {"user_id": user_id, "reason": reason}},
        )

    async def timeout(self, user_id: str, seconds: int, reason: str) -> None:
        await self._request(
            "POST",
            "moderation/bans",
            as_user=self.broadcaster_id,
            params=self._mod_params(),
            json={"data": {"user_id": user_id, "duration": seconds, "reason": reason}},
        )

    async def delete_message(self, message_id: str) -> None:
        await self._request(
            "DELETE",
            "moderation/chat",
            as_user=self.broadcaster_id,
            params={**self._mod_params(), "message_id": message_id},
        )

    # ------------------------------------------------------------------
    # Channel points
    # ------------------------------------------------------------------

    async def list_rewards(self) -> list[RemoteReward]:
        data = await self._request(
            "GET",
            "channel_points/custom_rewards",
            as_user=self.broadcaster_id,
            params={"broadcaster_id": self.broadcaster_id, "only_manageable_rewards": "true"},
        )
        return [_remote_reward(r) for r in data.get("data", [])]

    async def create_reward(self, spec: dict[str, Any]) -> RemoteReward:
        data = await self._request(
            "POST",
            "channel_points/custom_rewards",
            as_user=self.broadcaster_id,
            params={"broadcaster_id": self.broadcaster_id},
            json=spec,
        )
        return _remote_reward(data["data"][0])

    async def update_reward(self, reward_id: str, fields: dict[str, Any]) -> RemoteReward:
        data = await self._request(
            "PATCH",
            "channel_points/custom_rewards",
            as_user=self.broadcaster_id,
            params={"broadcaster_id": self.broadcaster_id, "id": reward_id},
            json=fields,
        )
        return _remote_reward(data["data"][0])

    async def fulfill_redemption(self, reward_id: str, redemption_id: str, status: str) -> None:
        await self._request(
            "PATCH",
            "channel_points/custom_rewards/redemptions",
            as_user=self.broadcaster_id,
            params={
                "broadcaster_id": self.broadcaster_id,
                "reward_id": reward_id,
                "id": redemption_id,
            },
            json={"status": status},
        )

    # ------------------------------------------------------------------
    # Channel / chat
    # ------------------------------------------------------------------

    async def update_channel(self, *, title: str, game_id: str, tags: list[str]) -> None:
        await self._request(
            "PATCH",
            "channels",
            as_user=self.broadcaster_id,
            params={"broadcaster_id": self.broadcaster_id},
            json={"title": title, "game_id": game_id, "tags": tags},
        )

    async def send_chat_message(self, message: str) -> bool:
        data = await self._request(
            "POST",
            "chat/messages",
            as_user=self.bot_id,
            json={
                "broadcaster_id": self.broadcaster_id,
                "sender_id": self.bot_id,
                "message": message,
            },
        )
        result = (data.get("data") or [{}])[0]
        if not result.get("is_sent", False):
            drop = result.get("drop_reason") or {}
            logger.warning(f"Chat message dropped: {drop.get('message', 'unknown reason')}")
            return False
        return True

    async def send_whisper(self, login: str, message: str) -> None:
        to_user_id = await self.get_user_id(login)
        if to_user_id is None:
            raise RpcFailed(404, f"unknown user {login}")
        await self._request(
            "POST",
            "whispers",
            as_user=self.bot_id,
            params={"from_user_id": self.bot_id, "to_user_id": to_user_id},
            json={"message": message},
        )
