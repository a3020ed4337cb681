"""Local audio playback through ``ffplay``."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path

from core.errors import NotConnected, RpcFailed

logger = logging.getLogger(__name__)


class SoundPlayer:
    """Plays ``<audio_dir>/<name>.mp3`` clips and raw mp3 bytes.

    ``play``/``play_audio`` return once the clip is queued; clips play one
    after another in the background so a long TTS line never holds up the
    event loop's handlers.
    """

    def __init__(self, audio_dir: Path, *, ffplay: str = "ffplay") -> None:
        self.audio_dir = Path(audio_dir)
        self.ffplay = ffplay
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    def path_for(self, name: str) -> Path:
        return self.audio_dir / f"{Path(name).name}.mp3"

    def _check_player(self) -> None:
        if shutil.which(self.ffplay) is None:
            raise NotConnected(f"sound ({self.ffplay} not found)")

    async def play(self, name: str) -> None:
        path = self.path_for(name)
        if not path.is_file():
            raise RpcFailed(404, f"missing sound file {path}")
        self._check_player()
        self._spawn(path, cleanup=False)

    async def play_audio(self, data: bytes) -> None:
        if not data:
            return
        self._check_player()
        fd, tmp = tempfile.mkstemp(suffix=".mp3", prefix="cohost_tts_")
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        self._spawn(Path(tmp), cleanup=True)

    def _spawn(self, path: Path, *, cleanup: bool) -> None:
        task = asyncio.create_task(self._run(path, cleanup))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, path: Path, cleanup: bool) -> None:
        try:
            async with self._lock:
                proc = await asyncio.create_subprocess_exec(
                    self.ffplay,
                    "-nodisp",
                    "-autoexit",
                    "-loglevel",
                    "quiet",
                    str(path),
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
                code = await proc.wait()
            if code != 0:
                logger.warning(f"ffplay exited with {code} for {path.name}")
        except OSError as e:
            logger.warning(f"Playback of {path.name} failed: {e}")
        finally:
            if cleanup:
                try:
                    os.unlink(path)
                except OSError as e:
                    logger.debug(f"Could not remove {path}: {e}")

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
