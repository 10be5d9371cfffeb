"""
Voice WebSocket Handler
Hosts one voice capture session per WebSocket connection and stages the
interpreted reading until the user confirms it.
"""

import json
import logging
from datetime import datetime
from typing import Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect

from audio_capture import MicrophoneUnavailableError
from extraction_service import ExtractionService
from health_log import HealthLog, MedicationCatalog
from models import ParsedReading, ReadingKind, Source
from voice_session import SessionStatus, VoiceCaptureSession

logger = logging.getLogger("voice-websocket")

MICROPHONE_ERROR_MESSAGE = "Could not access the microphone."
EMPTY_CATALOG_MESSAGE = "To log medication, you first need to add your medications to the app."


class VoiceWebSocketHandler:
    """
    Client -> server: {"type": "start" | "stop" | "confirm" | "discard"}
    Server -> client: status, transcript, result, saved, error
    """

    def __init__(
        self,
        websocket: WebSocket,
        kind: ReadingKind,
        health_log: HealthLog,
        catalog: MedicationCatalog,
        extraction: ExtractionService,
        session_factory=VoiceCaptureSession,
    ):
        self.websocket = websocket
        self.kind = kind
        self.health_log = health_log
        self.catalog = catalog
        self.extraction = extraction
        self.session_factory = session_factory
        self.staged: Optional[Tuple[ParsedReading, str]] = None

    async def send_status_to_ui(self, status_type: str, message: str, **kwargs):
        """Send status/notification to UI via WebSocket"""
        payload = {
            "type": "status",
            "status": status_type,
            "message": message,
            "timestamp": datetime.now().isoformat(),
            **kwargs
        }
        await self.websocket.send_json(payload)

    async def send_error(self, message: str):
        logger.info(f"📤 Sending error to UI: {message}")
        await self.websocket.send_json({"type": "error", "message": message})

    async def send_transcript(self, text: str):
        await self.websocket.send_json({"type": "transcript", "text": text})

    async def send_result(self, parsed: ParsedReading):
        transcript = self.staged[1] if self.staged else ""
        await self.websocket.send_json({
            "type": "result",
            "kind": self.kind.value,
            "staged": parsed.model_dump(mode="json"),
            "transcript": transcript,
            "needs_confirmation": True,
        })

    async def interpret(self, transcript: str):
        """Called once per session with the full transcript"""
        if self.kind == ReadingKind.MEDICATION:
            result = await self.extraction.match_medication(transcript, self.catalog.list())
        else:
            result = await self.extraction.extract_from_text(transcript, self.kind)
        if result is not None:
            self.staged = (result, transcript)
        return result

    async def confirm(self):
        if self.staged is None:
            await self.send_error("Nothing to confirm.")
            return
        parsed, transcript = self.staged
        self.staged = None
        reading = self.health_log.record_parsed(parsed, source=Source.VOICE, transcript=transcript)
        await self.websocket.send_json({"type": "saved", "reading": reading.model_dump(mode="json")})

    async def handle_message(self, session: VoiceCaptureSession, data: dict):
        message_type = data.get("type")

        if message_type == "start":
            if self.kind == ReadingKind.MEDICATION and not self.catalog.list():
                await self.send_error(EMPTY_CATALOG_MESSAGE)
                return
            self.staged = None
            try:
                await session.start()
            except MicrophoneUnavailableError as e:
                logger.error(f"Error starting audio session: {e}")
                await self.send_error(MICROPHONE_ERROR_MESSAGE)
                return
            listening = session.status is SessionStatus.LISTENING
            await self.send_status_to_ui(session.status.value, "Listening..." if listening else "Not listening")

        elif message_type == "stop":
            await session.stop()
            await self.send_status_to_ui(session.status.value, "Stopped listening")

        elif message_type == "confirm":
            await self.confirm()

        elif message_type == "discard":
            self.staged = None
            await session.close()
            await self.send_status_to_ui(session.status.value, "Discarded")

        else:
            await self.send_error(f"Unknown message type: {message_type}")

    async def run(self):
        """Main loop. Leaving it for any reason tears the voice session down."""
        logger.info(f"🎵 Starting voice capture surface for {self.kind.value}")
        async with self.session_factory(
            interpret=self.interpret,
            on_result=self.send_result,
            on_error=self.send_error,
            on_transcript=self.send_transcript,
        ) as session:
            await self.send_status_to_ui(session.status.value, "Voice capture ready", kind=self.kind.value)
            try:
                while True:
                    raw = await self.websocket.receive_text()
                    try:
                        data = json.loads(raw)
                    except json.JSONDecodeError:
                        await self.send_error("Messages must be JSON.")
                        continue
                    if not isinstance(data, dict):
                        await self.send_error("Messages must be JSON objects.")
                        continue
                    await self.handle_message(session, data)
            except WebSocketDisconnect:
                logger.info("Client disconnected")
        logger.info("🧹 Voice capture surface closed")
