"""Speech synthesis for call prompts, with a content-addressed audio cache.

Prompts are rendered to audio once and then served from memory: the TwiML
``<Play>`` URL carries the literal prompt text, and the cache key is a hash
of that text.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass

import httpx

log = logging.getLogger("callbooking.tts")


class SpeechSynthesisError(RuntimeError):
    """The TTS provider failed or is not configured."""


class SpeechSynthesizer(ABC):
    """Abstract text-to-speech backend.

    Implementations return complete audio files (``audio/mpeg``).
    """

    content_type: str = "audio/mpeg"

    @property
    @abstractmethod
    def configured(self) -> bool:
        """Whether the backend has the credentials it needs."""

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Render ``text`` to audio.

        Raises:
            SpeechSynthesisError: on provider failure.
        """


@dataclass
class VoiceSettings:
    stability: float = 0.45
    similarity_boost: float = 0.85
    style: float = 0.3
    use_speaker_boost: bool = True


class ElevenLabsSynthesizer(SpeechSynthesizer):
    """ElevenLabs streaming TTS endpoint, read to completion."""

    def __init__(
        self,
        api_key: str,
        voice_id: str,
        base_url: str = "https://api.elevenlabs.io",
        voice: VoiceSettings | None = None,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._voice_id = voice_id
        self._base_url = base_url.rstrip("/")
        self._voice = voice or VoiceSettings()
        self._timeout = timeout
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._voice_id)

    async def synthesize(self, text: str) -> bytes:
        if not self.configured:
            raise SpeechSynthesisError("ElevenLabs API key or voice id not set")

        url = f"{self._base_url}/v1/text-to-speech/{self._voice_id}/stream"
        headers = {
            "xi-api-key": self._api_key,
            "Content-Type": "application/json",
            "Accept": self.content_type,
        }
        payload = {
            "text": text,
            "voice_settings": {
                "stability": self._voice.stability,
                "similarity_boost": self._voice.similarity_boost,
                "style": self._voice.style,
                "use_speaker_boost": self._voice.use_speaker_boost,
            },
        }

        try:
            if self._client is not None:
                resp = await self._client.post(url, headers=headers, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise SpeechSynthesisError(f"ElevenLabs request failed: {e}") from e

        if resp.status_code != 200:
            log.error("ElevenLabs error %d: %s", resp.status_code, resp.text[:200])
            raise SpeechSynthesisError(f"ElevenLabs returned HTTP {resp.status_code}")
        if not resp.content:
            raise SpeechSynthesisError("ElevenLabs returned no audio")
        return resp.content


def cache_key(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class AudioCache:
    """Bounded LRU of synthesized audio keyed on the prompt text.

    ``warm_timeout`` caps how long :meth:`warm` waits on the provider, so a
    slow synthesis falls back to ``<Say>`` inside Twilio's webhook deadline.
    """

    def __init__(
        self,
        synthesizer: SpeechSynthesizer,
        max_entries: int = 256,
        warm_timeout: float | None = None,
    ) -> None:
        self._synthesizer = synthesizer
        self._max_entries = max_entries
        self._warm_timeout = warm_timeout
        self._entries: OrderedDict[str, bytes] = OrderedDict()
        self.hits = 0
        self.misses = 0

    @property
    def synthesizer(self) -> SpeechSynthesizer:
        return self._synthesizer

    @property
    def enabled(self) -> bool:
        return self._synthesizer.configured

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, text: str) -> bool:
        return cache_key(text) in self._entries

    async def get_audio(self, text: str) -> bytes:
        """Audio for ``text``, synthesizing on a miss.

        Raises:
            SpeechSynthesisError: on a miss the provider could not fill.
        """
        key = cache_key(text)
        audio = self._entries.get(key)
        if audio is not None:
            self._entries.move_to_end(key)
            self.hits += 1
            return audio

        self.misses += 1
        audio = await self._synthesizer.synthesize(text)
        self._entries[key] = audio
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
        log.debug("Cached %d bytes of audio for %d chars", len(audio), len(text))
        return audio

    async def warm(self, text: str) -> bool:
        """Synthesize ahead of the ``<Play>`` fetch.  False means use ``<Say>``."""
        if not self.enabled:
            return False
        try:
            await asyncio.wait_for(self.get_audio(text), timeout=self._warm_timeout)
        except SpeechSynthesisError as e:
            log.warning("TTS failed, falling back to <Say>: %s", e)
            return False
        except asyncio.TimeoutError:
            log.warning("TTS took over %.1fs, falling back to <Say>", self._warm_timeout)
            return False
        return True
