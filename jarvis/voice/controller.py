"""Voice controller: wake-word and speech-to-text hand-off.

At most one listener is active at a time. The wake-word engine listens
until the keyword is heard, then hands the microphone to speech-to-text;
a final transcript is sent as a chat message and the wake-word engine
resumes. Transitions live in one table keyed by (state, event).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

import structlog

from jarvis.config import VoiceConfig

logger = structlog.get_logger()


class VoiceState(str, Enum):
    IDLE = "idle"
    WAKE_LISTENING = "wake_listening"
    HANDOFF = "handoff"  # Wake engine stopped, recognizer not started yet
    SPEECH_LISTENING = "speech_listening"


class VoiceEvent(str, Enum):
    START = "start"
    DETECTED = "detected"
    TOGGLE = "toggle"
    RESULT = "result"
    END = "end"
    ERROR = "error"


class WakeWordEngine(Protocol):
    """Keyword spotter. Detections are delivered to VoiceController.on_detected()."""

    async def init(self) -> None: ...
    async def start(self) -> None: ...
    async def stop(self) -> None: ...
    async def release(self) -> None: ...


class SpeechToText(Protocol):
    """Recognizer. Results go to on_result(); end/error to on_end()/on_error()."""

    async def start(self) -> None: ...
    async def stop(self) -> None: ...


class VoiceController:
    """Finite state machine over a wake-word engine and a recognizer."""

    def __init__(
        self,
        wake: WakeWordEngine,
        speech: SpeechToText,
        send_message: Callable[[str], Awaitable[Any]],
        is_busy: Callable[[], bool] | None = None,
        config: VoiceConfig | None = None,
    ) -> None:
        self.wake = wake
        self.speech = speech
        self.config = config or VoiceConfig()
        self._send_message = send_message
        self._is_busy = is_busy or (lambda: False)

        self.state = VoiceState.IDLE
        self.transcript = ""
        self._initialized = False
        self._generation = 0  # Bumped by stop/pause to cancel pending restarts

        self._transitions: dict[
            tuple[VoiceState, VoiceEvent], Callable[..., Awaitable[None]]
        ] = {
            (VoiceState.IDLE, VoiceEvent.START): self._start_wake,
            (VoiceState.IDLE, VoiceEvent.TOGGLE): self._start_speech,
            (VoiceState.WAKE_LISTENING, VoiceEvent.DETECTED): self._wake_to_speech,
            (VoiceState.WAKE_LISTENING, VoiceEvent.TOGGLE): self._manual_to_speech,
            (VoiceState.SPEECH_LISTENING, VoiceEvent.RESULT): self._final_result,
            (VoiceState.SPEECH_LISTENING, VoiceEvent.END): self._speech_to_wake,
            (VoiceState.SPEECH_LISTENING, VoiceEvent.ERROR): self._speech_to_wake,
            (VoiceState.SPEECH_LISTENING, VoiceEvent.TOGGLE): self._speech_to_wake,
        }

    async def _dispatch(self, event: VoiceEvent, *args: Any) -> bool:
        handler = self._transitions.get((self.state, event))
        if handler is None:
            logger.debug("voice_event_ignored", state=self.state.value, voice_event=event.value)
            return False
        logger.debug("voice_transition", state=self.state.value, voice_event=event.value)
        await handler(*args)
        return True

    @staticmethod
    async def _delay(ms: int) -> None:
        if ms > 0:
            await asyncio.sleep(ms / 1000)

    # --- Lifecycle ---

    async def init(self) -> None:
        if self._initialized:
            return
        await self.wake.init()
        self._initialized = True
        logger.info("voice_initialized", keyword=self.config.keyword_label)

    async def release(self) -> None:
        await self.stop()
        if self._initialized:
            await self.wake.release()
            self._initialized = False
        logger.info("voice_released")

    # --- Commands ---

    async def start(self) -> bool:
        return await self._dispatch(VoiceEvent.START)

    async def toggle(self) -> bool:
        """Manual microphone button: start or end speech capture."""
        return await self._dispatch(VoiceEvent.TOGGLE)

    async def stop(self) -> None:
        """Stop whichever listener is active and go idle."""
        self._generation += 1
        await self._stop_active()
        self.state = VoiceState.IDLE

    async def pause(self) -> None:
        """Silence listening before a message is sent."""
        self._generation += 1
        await self._stop_active()
        self.state = VoiceState.IDLE

    # --- Engine events ---

    async def on_detected(self, label: str) -> bool:
        if label != self.config.keyword_label:
            logger.debug("voice_keyword_mismatch", label=label)
            return False
        if self._is_busy():
            logger.debug("voice_detection_ignored", reason="busy")
            return False
        return await self._dispatch(VoiceEvent.DETECTED)

    async def on_result(self, text: str, is_final: bool) -> bool:
        if not is_final:
            if self.state == VoiceState.SPEECH_LISTENING:
                self.transcript = text
            return False
        return await self._dispatch(VoiceEvent.RESULT, text)

    async def on_end(self) -> bool:
        return await self._dispatch(VoiceEvent.END)

    async def on_error(self, error: str) -> bool:
        logger.warning("voice_speech_error", error=error)
        return await self._dispatch(VoiceEvent.ERROR)

    # --- Transition actions ---

    async def _start_wake(self) -> None:
        try:
            await self.wake.start()
        except Exception as e:
            logger.warning("voice_wake_start_failed", error=str(e))
            self.state = VoiceState.IDLE
            return
        self.state = VoiceState.WAKE_LISTENING

    async def _start_speech(self) -> None:
        self.transcript = ""
        self.state = VoiceState.SPEECH_LISTENING
        try:
            await self.speech.start()
        except Exception as e:
            logger.warning("voice_speech_start_failed", error=str(e))
            self.state = VoiceState.IDLE
            await self._start_wake()

    async def _wake_to_speech(self) -> None:
        await self._stop_wake()
        self.state = VoiceState.HANDOFF
        generation = self._generation
        await self._delay(self.config.handoff_delay_ms)
        if generation == self._generation:
            await self._start_speech()

    async def _manual_to_speech(self) -> None:
        await self._stop_wake()
        await self._start_speech()

    async def _final_result(self, text: str) -> None:
        message = text.strip()
        if not message:
            await self._speech_to_wake()
            return

        self.transcript = message
        await self._stop_speech()
        self.state = VoiceState.IDLE
        logger.info("voice_message", chars=len(message))
        generation = self._generation
        try:
            await self._send_message(message)
        finally:
            self.transcript = ""
            await self._delay(self.config.restart_delay_ms)
            if self.state == VoiceState.IDLE and generation == self._generation:
                await self._start_wake()

    async def _speech_to_wake(self) -> None:
        await self._stop_speech()
        self.state = VoiceState.IDLE
        generation = self._generation
        await self._delay(self.config.speech_end_delay_ms)
        if self.state == VoiceState.IDLE and generation == self._generation:
            await self._start_wake()

    # --- Listener shutdown ---

    async def _stop_active(self) -> None:
        if self.state == VoiceState.WAKE_LISTENING:
            await self._stop_wake()
        elif self.state == VoiceState.SPEECH_LISTENING:
            await self._stop_speech()

    async def _stop_wake(self) -> None:
        try:
            await self.wake.stop()
        except Exception as e:
            logger.warning("voice_wake_stop_failed", error=str(e))

    async def _stop_speech(self) -> None:
        try:
            await self.speech.stop()
        except Exception as e:
            logger.warning("voice_speech_stop_failed", error=str(e))
