"""Music request queue with vote-skip.

The queue itself is a ``PersistentDeck`` of track URLs so requests survive
a restart. ``currently_playing`` is process state: it is only set once a
``song`` command has actually been handed to the player.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable

from core.capabilities import MusicTransport
from core.errors import CohostError, NothingToSkip, ValidationFailed
from shared.deck import PersistentDeck

LOGGER = logging.getLogger("MusicQueue")

SongListener = Callable[[str], Awaitable[None]]


def normalize_track_name(raw: str) -> str:
    """Players report ``Title\\nArtist``; render it as ``Title by Artist``."""
    return raw.strip().replace("\n", " by ")


class MusicQueue:
    def __init__(
        self,
        deck: PersistentDeck[str],
        transport: MusicTransport,
        *,
        vote_threshold: int = 3,
        fallback_url: str = "https://music.yandex.ru/",
        initial_song_name: str = "Silence by silencer",
        url_pattern: str = r"^https://music\.yandex\.(ru|com)/(album/\d+/)?track/\d+",
    ) -> None:
        self.deck = deck
        self.transport = transport
        self.vote_threshold = vote_threshold
        self.fallback_url = fallback_url
        self.url_pattern = re.compile(url_pattern)
        self.currently_playing: str | None = None
        self.votes_remaining = vote_threshold
        self.current_song_name = initial_song_name
        self._listeners: list[SongListener] = []

    def subscribe(self, listener: SongListener) -> None:
        self._listeners.append(listener)

    def __len__(self) -> int:
        return len(self.deck)

    def validate(self, url: str) -> str:
        """Return the canonical track URL or raise ``ValidationFailed``."""
        candidate = url.strip()
        if not self.url_pattern.match(candidate):
            raise ValidationFailed("url", "Invalid song URL. Please use Yandex Music track URL.")
        return candidate.replace("music.yandex.com", "music.yandex.ru", 1)

    async def add(self, url: str) -> int:
        """Queue a validated URL; returns its position (0 = playing now)."""
        track = self.validate(url)
        if self.currently_playing is None:
            await self._play(track, requeue_on_failure=True)
            return 0 if self.currently_playing == track else len(self.deck)
        self.deck.push(track)
        LOGGER.info(f"[MUSIC] Queued {track} at position {len(self.deck)}")
        return len(self.deck)

    async def prime(self) -> None:
        if self.currently_playing is None:
            await self.skip()

    async def on_track_completed(self) -> None:
        LOGGER.debug(f"[MUSIC] Finished {self.currently_playing}")
        await self.skip()

    async def skip(self) -> None:
        self.currently_playing = None
        self.votes_remaining = self.vote_threshold
        next_url = self.deck.shift()
        if next_url is None:
            await self._play(self.fallback_url)
        else:
            await self._play(next_url, requeue_on_failure=True)

    async def vote_skip(self) -> int:
        """Count one vote; returns votes still needed (0 means skipped)."""
        if self.currently_playing in (None, self.fallback_url):
            raise NothingToSkip("nothing to skip")
        self.votes_remaining = max(0, self.votes_remaining - 1)
        if self.votes_remaining == 0:
            LOGGER.info(f"[MUSIC] Vote skip reached for {self.currently_playing}")
            await self.skip()
            return 0
        return self.votes_remaining

    async def on_track_started(self, raw_name: str) -> None:
        self.current_song_name = normalize_track_name(raw_name)
        LOGGER.info(f"[MUSIC] Now playing: {self.current_song_name}")
        for listener in list(self._listeners):
            try:
                await listener(self.current_song_name)
            except Exception as e:
                LOGGER.warning(f"[MUSIC] Song listener failed: {e}")

    async def query_status(self) -> None:
        """Ask the player what it is playing; the answer arrives as ``status_reply``."""
        try:
            await self.transport.send("query_status")
        except CohostError as e:
            LOGGER.warning(f"[MUSIC] Status query failed: {e}")

    async def on_status_reply(self, data: object) -> None:
        """Sync the song name from a player status reply without announcing it."""
        track_info = data.get("trackInfo") if isinstance(data, dict) else None
        if not track_info:
            return
        self.current_song_name = normalize_track_name(str(track_info))
        LOGGER.info(f"[MUSIC] Current song synced: {self.current_song_name}")

    async def _play(self, url: str, *, requeue_on_failure: bool = False) -> None:
        try:
            await self.transport.send("song", url)
        except CohostError as e:
            LOGGER.warning(f"[MUSIC] Player unreachable, {url} not started: {e}")
            if requeue_on_failure:
                self.deck.unshift(url)
            return
        self.currently_playing = url
        LOGGER.info(f"[MUSIC] Playing {url}")
