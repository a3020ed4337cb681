"""Text-to-speech through Amazon Polly."""

from __future__ import annotations

import asyncio
import logging
import math
from xml.sax.saxutils import escape

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.actions import VoiceOptions
from core.config import VoiceChoice
from core.errors import RpcFailed

logger = logging.getLogger(__name__)


def pick_voice(choices: list[VoiceChoice], language: str) -> VoiceChoice | None:
    """First entry whose language prefix matches ``language`` wins."""
    language = language.lower()
    for choice in choices:
        prefix = choice.language.lower()
        if language.startswith(prefix) or prefix.startswith(language):
            return choice
    return None


def build_ssml(text: str, options: VoiceOptions, engine: str) -> str | None:
    """Wrap ``text`` in a prosody tag when any option differs from neutral."""
    attrs = []
    if options.rate != 1.0:
        attrs.append(f'rate="{round(options.rate * 100)}%"')
    if options.volume != 1.0 and options.volume > 0:
        attrs.append(f'volume="{20 * math.log10(options.volume):+.1f}dB"')
    # Neural voices reject pitch
    if options.pitch != 1.0 and engine == "standard":
        attrs.append(f'pitch="{round((options.pitch - 1.0) * 100):+d}%"')
    if not attrs:
        return None
    return f"<speak><prosody {' '.join(attrs)}>{escape(text)}</prosody></speak>"


class PollyTTS:
    def __init__(
        self,
        voices: list[VoiceChoice],
        *,
        region: str = "us-east-1",
        fallback_language: str = "en",
    ) -> None:
        self.voices = voices
        self.region = region
        self.fallback_language = fallback_language
        self._client = None

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("polly", region_name=self.region)
        return self._client

    def _resolve(self, language: str, options: VoiceOptions) -> VoiceChoice:
        if options.voice_name:
            return VoiceChoice(language=language, voice=options.voice_name)
        choice = pick_voice(self.voices, language) or pick_voice(
            self.voices, self.fallback_language
        )
        if choice is None:
            if not self.voices:
                raise RpcFailed(0, "no TTS voices configured")
            choice = self.voices[0]
        return choice

    def _synthesize_sync(self, text: str, choice: VoiceChoice, options: VoiceOptions) -> bytes:
        ssml = build_ssml(text, options, choice.engine)
        response = self.client.synthesize_speech(
            VoiceId=choice.voice,
            OutputFormat="mp3",
            Engine=choice.engine,
            Text=ssml or text,
            TextType="ssml" if ssml else "text",
        )
        return response["AudioStream"].read()

    async def synthesize(self, text: str, language: str, options: VoiceOptions) -> bytes:
        choice = self._resolve(language, options)
        logger.info(f"TTS [{choice.voice}/{language}] {text[:60]}")
        try:
            return await asyncio.to_thread(self._synthesize_sync, text, choice, options)
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            raise RpcFailed(status, str(e)) from e
        except BotoCoreError as e:
            raise RpcFailed(0, str(e)) from e
