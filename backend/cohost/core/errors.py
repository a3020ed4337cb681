"""Error kinds raised by capabilities and core components."""

from __future__ import annotations


class CohostError(Exception):
    """Base class for every failure the core knows how to handle."""


class TransportDown(CohostError):
    def __init__(self, name: str) -> None:
        super().__init__(f"{name} transport is down")
        self.name = name


class NotConnected(CohostError):
    def __init__(self, name: str) -> None:
        super().__init__(f"{name} is not connected")
        self.name = name


class RpcFailed(CohostError):
    def __init__(self, status: int, body: str = "") -> None:
        super().__init__(f"RPC failed with status {status}: {body[:200]}")
        self.status = status
        self.body = body


class RpcTimeout(CohostError):
    pass


class ValidationFailed(CohostError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class Throttled(CohostError):
    def __init__(self, key: str, remaining: float) -> None:
        super().__init__(f"{key} on cooldown for {remaining:.0f}s")
        self.key = key
        self.remaining = remaining


class NothingToSkip(CohostError):
    pass


class UnknownReward(CohostError):
    def __init__(self, reward_id: str) -> None:
        super().__init__(f"unknown reward {reward_id}")
        self.reward_id = reward_id


class ParseFailed(CohostError):
    pass
