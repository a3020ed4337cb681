"""Speech-to-text feed.

The recogniser pushes JSON messages: ``hello`` on connect, ``partial_result``
while the streamer talks, one ``final_result`` per utterance and
``recognition_error`` on failure. Only final results become events.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable

from core.events import SpeechFinal
from services.websocket import WebSocketLink

logger = logging.getLogger(__name__)

# Recogniser's "no match" error; fires on every silence
NO_MATCH = 7


class SpeechSource(WebSocketLink):
    name = "speech"

    def __init__(self, url: str, submit: Callable[[SpeechFinal], Awaitable[None]], **kwargs) -> None:
        super().__init__(url, **kwargs)
        self.submit = submit
        self.partial = ""

    async def on_text(self, data: str) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning(f"Speech: unparsable message: {e}")
            return

        kind = message.get("type")
        if kind == "hello":
            logger.info(
                f"Speech handshake: {message.get('device_name', '?')} "
                f"(protocol v{message.get('protocol_version', '?')})"
            )
        elif kind == "partial_result":
            text = message.get("text", "")
            self.partial = f"{self.partial} {text}".strip() if self.partial else text
            logger.debug(f"Speech [partial] {self.partial}")
        elif kind == "final_result":
            self.partial = ""
            phrase = (message.get("best_text") or "").strip()
            if not phrase:
                return
            confidence = float(message.get("best_confidence") or 0.0)
            language = message.get("language") or ""
            logger.info(f'Speech [final] "{phrase}" ({language}, confidence: {confidence:.2f})')
            await self.submit(SpeechFinal(phrase, language, confidence))
        elif kind == "recognition_error":
            self.partial = ""
            if message.get("error_code") == NO_MATCH:
                return
            logger.warning(
                f"Speech recognition error [{message.get('error_code')}]: "
                f"{message.get('error_message', '')}"
            )
