"""
Realtime Voice Capture Session

Streams microphone audio to the Gemini Live API and collects the input
transcription. The flow is "capture until stopped, then interpret once":

    idle --start--> listening --stop/fault--> draining --> idle (+ interpret)

The microphone, the frame pipeline and the Live channel are owned by the
session and released together, in that order, on every exit path.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from google import genai
from google.genai import types

import config
from audio_capture import Microphone, MicrophoneUnavailableError

logger = logging.getLogger("voice-session")

CONNECTION_ERROR_MESSAGE = "A real-time connection error occurred."
NOT_UNDERSTOOD_MESSAGE = "Couldn't understand. Please try again."
INTERPRET_ERROR_MESSAGE = "An error occurred. Please try again."


class SessionStatus(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    DRAINING = "draining"


def get_live_config() -> dict:
    """Audio in, incremental input transcription out"""
    return {
        "response_modalities": ["AUDIO"],
        "input_audio_transcription": {},
    }


class VoiceCaptureSession:
    """
    One capture surface, one listening session at a time.

    interpret: coroutine called with the final transcript after stop.
    on_result / on_error / on_transcript: optional coroutines used to push
    updates to the hosting UI.

    Use as an async context manager so that dismissing the surface always
    tears the session down.
    """

    def __init__(
        self,
        interpret: Callable[[str], Awaitable[Any]],
        on_result: Optional[Callable[[Any], Awaitable[None]]] = None,
        on_error: Optional[Callable[[str], Awaitable[None]]] = None,
        on_transcript: Optional[Callable[[str], Awaitable[None]]] = None,
        client: Optional[genai.Client] = None,
        microphone_factory: Callable[[], Microphone] = Microphone,
        model: str = config.LIVE_MODEL,
    ):
        self.interpret = interpret
        self.on_result = on_result
        self.on_error = on_error
        self.on_transcript = on_transcript
        self.client = client
        self.microphone_factory = microphone_factory
        self.model = model

        self.status = SessionStatus.IDLE
        self._transcript = ""
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        # Owned resources, None when not held
        self._microphone: Optional[Microphone] = None
        self._frames: Optional[asyncio.Queue] = None
        self._sender: Optional[asyncio.Task] = None
        self._receiver: Optional[asyncio.Task] = None
        self._channel_cm = None
        self._channel = None
        self._fault_task: Optional[asyncio.Task] = None

    @property
    def transcript(self) -> str:
        """
        Text heard so far. Reset by start() and close(), not by returning to
        idle, so it stays readable after stop() until the next session.
        """
        return self._transcript

    def _get_client(self) -> genai.Client:
        if self.client is None:
            api_key = config.GOOGLE_API_KEY
            if not api_key:
                raise ValueError("GOOGLE_API_KEY is required for Gemini Live API")
            self.client = genai.Client(api_key=api_key)
        return self.client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """
        Acquire the microphone, open the Live channel and start streaming.

        Raises MicrophoneUnavailableError if the device can't be acquired.
        A channel failure is reported through on_error.
        """
        async with self._lock:
            if self.status is not SessionStatus.IDLE:
                logger.warning(f"⚠️ start() ignored, session is {self.status.value}")
                return

            self._transcript = ""
            self._loop = asyncio.get_running_loop()

            microphone = self.microphone_factory()
            microphone.open(self._on_frame)
            self._microphone = microphone

            try:
                logger.info(f"🔌 Connecting to Gemini Live API ({self.model})...")
                channel_cm = self._get_client().aio.live.connect(model=self.model, config=get_live_config())
                self._channel = await channel_cm.__aenter__()
                self._channel_cm = channel_cm
            except Exception as e:
                logger.error(f"❌ Live session error: {e}")
                await self._drain()
                await self._emit_error(CONNECTION_ERROR_MESSAGE)
                return

            self._frames = asyncio.Queue()
            self._sender = asyncio.create_task(self._send_frames(self._frames, self._channel))
            self._receiver = asyncio.create_task(self._receive_transcripts(self._channel))
            self.status = SessionStatus.LISTENING
            try:
                microphone.start()
            except MicrophoneUnavailableError:
                await self._drain()
                raise
            except Exception as e:
                logger.error(f"❌ Could not start microphone: {e}")
                await self._drain()
                raise MicrophoneUnavailableError(str(e)) from e
            logger.info("🎙️ Listening")

    async def stop(self):
        """
        Stop capturing and interpret what was heard.

        No-op unless listening. Returns the interpreted result, or None.
        """
        async with self._lock:
            if self.status is not SessionStatus.LISTENING:
                return None
            await self._drain()
            transcript = self._transcript

        if not transcript:
            logger.info("🔇 Session stopped with an empty transcript")
            return None
        return await self._interpret(transcript)

    async def close(self):
        """Tear down without interpreting, for when the hosting surface goes away"""
        async with self._lock:
            if self.status is SessionStatus.LISTENING:
                logger.info("🧹 Surface closed mid-session, releasing resources")
                await self._drain()
            self._transcript = ""

    async def _drain(self):
        """Release microphone, pipeline, channel. Safe with partially acquired resources."""
        self.status = SessionStatus.DRAINING

        microphone, self._microphone = self._microphone, None
        if microphone is not None:
            try:
                microphone.close()
            except Exception as e:
                logger.warning(f"Error closing microphone: {e}")

        tasks = [t for t in (self._sender, self._receiver) if t is not None]
        self._sender = self._receiver = None
        current = asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        await asyncio.gather(*(t for t in tasks if t is not current), return_exceptions=True)
        self._frames = None

        channel_cm, self._channel_cm, self._channel = self._channel_cm, None, None
        if channel_cm is not None:
            try:
                await channel_cm.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing Live session: {e}")

        self.status = SessionStatus.IDLE
        logger.info("🧹 Session drained")

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _on_frame(self, pcm: bytes):
        """Audio thread side. Frames outside listening are dropped here or on the loop."""
        if self.status is not SessionStatus.LISTENING or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue_frame, pcm)
        except RuntimeError:
            # loop already closed; the session is gone
            logger.debug("Discarding frame, event loop is closed")

    def _enqueue_frame(self, pcm: bytes):
        if self.status is not SessionStatus.LISTENING or self._frames is None:
            logger.debug("Discarding straggler frame")
            return
        self._frames.put_nowait(pcm)

    async def _send_frames(self, frames: asyncio.Queue, channel):
        """Send audio from queue to Gemini"""
        try:
            while True:
                pcm = await frames.get()
                if self.status is not SessionStatus.LISTENING:
                    continue
                await channel.send_realtime_input(
                    audio=types.Blob(data=pcm, mime_type=config.AUDIO_MIME_TYPE)
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error sending to Gemini: {e}")
            self._schedule_fault()

    async def _receive_transcripts(self, channel):
        """Append input transcription fragments in arrival order"""
        try:
            while True:
                received = False
                async for message in channel.receive():
                    received = True
                    content = message.server_content
                    if not content or not content.input_transcription:
                        continue
                    text = content.input_transcription.text
                    if not text or self.status is not SessionStatus.LISTENING:
                        continue
                    self._transcript += text
                    if self.on_transcript:
                        await self.on_transcript(self._transcript)
                if not received:
                    # server closed the channel
                    logger.info("Live session closed by server")
                    self._schedule_fault()
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error receiving from Gemini: {e}")
            self._schedule_fault()

    def _schedule_fault(self):
        # runs as its own task, _drain would otherwise cancel the failing pipeline task mid-cleanup
        if self._fault_task is None or self._fault_task.done():
            self._fault_task = asyncio.create_task(self._handle_fault())

    async def _handle_fault(self):
        if self.status is not SessionStatus.LISTENING:
            return
        try:
            await self._emit_error(CONNECTION_ERROR_MESSAGE)
        except Exception as e:
            logger.error(f"Could not report connection fault: {e}")
        await self.stop()

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def _interpret(self, transcript: str):
        logger.info(f"🧠 Interpreting transcript: {transcript[:100]}")
        try:
            result = await self.interpret(transcript)
        except Exception as e:
            logger.error(f"Error interpreting transcript: {e}")
            await self._emit_error(INTERPRET_ERROR_MESSAGE)
            return None

        if result is None:
            await self._emit_error(NOT_UNDERSTOOD_MESSAGE)
            return None
        if self.on_result:
            await self.on_result(result)
        return result

    async def _emit_error(self, message: str):
        if self.on_error:
            await self.on_error(message)
