"""
Health Log Server - manual, photo and voice logging of glucose, meals,
medications, weight and blood pressure.
"""

import base64
import binascii
import logging
import os

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError
from typing import Optional

import config
from extraction_service import ExtractionService, UnsupportedImageError
from health_log import HealthLog, MedicationCatalog
from models import ReadingKind, Source
from voice_websocket_handler import VoiceWebSocketHandler

# Configure Logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger("health-log-server")

# Session-lifetime state
health_log = HealthLog()
medication_catalog = MedicationCatalog()
extraction_service = ExtractionService()
voice_handler_class = VoiceWebSocketHandler

app = FastAPI(title="Health Log Server - Manual, Photo & Voice Logging")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Pydantic Models ---
class TranscriptRequest(BaseModel):
    transcript: str


class PhotoRequest(BaseModel):
    image: str  # base64
    mime_type: str


class CatalogEntryRequest(BaseModel):
    id: Optional[str] = None
    name: str
    dosage: float
    unit: str


def _parse_kind(kind: str) -> ReadingKind:
    try:
        return ReadingKind(kind)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown reading kind: {kind}")


# --- Basic Endpoints ---

@app.get("/")
async def root():
    return {
        "status": "Health Log Server is Running",
        "features": ["manual", "photo", "voice"],
        "endpoints": {
            "logs": "/api/logs",
            "readings": "/api/readings/{kind}",
            "extract_text": "/api/extract/{kind}/text",
            "extract_photo": "/api/extract/{kind}/photo",
            "medications": "/api/medications",
            "voice_ws": "/ws/voice/{kind}"
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "health-log",
        "readings": len(health_log),
        "port": os.environ.get("PORT", config.PORT)
    }


# --- Readings ---

@app.get("/api/logs")
async def get_logs():
    """All readings, newest first"""
    return {"logs": [r.model_dump(mode="json") for r in health_log.combined()], "version": health_log.version}


@app.get("/api/readings/{kind}")
async def get_readings(kind: str):
    reading_kind = _parse_kind(kind)
    return {"readings": [r.model_dump(mode="json") for r in health_log.readings(reading_kind)]}


@app.post("/api/readings/{kind}", status_code=201)
async def add_reading(kind: str, payload: dict):
    """Append a reading. Defaults to a manual entry timestamped now."""
    reading_kind = _parse_kind(kind)
    fields = dict(payload)
    fields.pop("id", None)
    fields.pop("kind", None)
    try:
        source = Source(fields.pop("source", Source.MANUAL))
        reading = health_log.create(reading_kind, source=source, **fields)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return reading.model_dump(mode="json")


# --- Extraction ---

@app.post("/api/extract/{kind}/text")
async def extract_text(kind: str, payload: TranscriptRequest):
    """Parse a typed or dictated description into a staged reading"""
    reading_kind = _parse_kind(kind)
    try:
        if reading_kind == ReadingKind.MEDICATION:
            result = await extraction_service.match_medication(payload.transcript, medication_catalog.list())
        else:
            result = await extraction_service.extract_from_text(payload.transcript, reading_kind)
    except Exception as e:
        logger.error(f"Error extracting {reading_kind.value} from text: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if result is None:
        raise HTTPException(status_code=422, detail={"error": "not_understood", "message": "Couldn't understand. Please try again."})
    return {"kind": reading_kind.value, "staged": result.model_dump(mode="json"), "transcript": payload.transcript}


@app.post("/api/extract/{kind}/photo")
async def extract_photo(kind: str, payload: PhotoRequest):
    """Read a meter/scale/monitor photo or a meal photo into a staged reading"""
    reading_kind = _parse_kind(kind)
    if reading_kind == ReadingKind.MEDICATION:
        raise HTTPException(status_code=400, detail="Medication cannot be logged from a photo")
    try:
        image = base64.b64decode(payload.image, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="image must be base64 encoded")

    try:
        result = await extraction_service.extract_from_image(image, payload.mime_type, reading_kind)
    except UnsupportedImageError as e:
        logger.info(f"📷 Rejected photo for {reading_kind.value}: {e}")
        raise HTTPException(status_code=422, detail={"error": "unsupported_image", "message": str(e)})
    except Exception as e:
        logger.error(f"Error extracting {reading_kind.value} from photo: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if result is None:
        raise HTTPException(status_code=422, detail={"error": "unreadable", "message": "Couldn't read the photo. Please try again."})
    return {"kind": reading_kind.value, "staged": result.model_dump(mode="json")}


# --- Medication Catalog ---

@app.get("/api/medications")
async def list_medications():
    return {"medications": [m.model_dump(mode="json") for m in medication_catalog.list()]}


@app.post("/api/medications")
async def save_medication(payload: CatalogEntryRequest):
    """Add a medication, or replace the one with the same id"""
    entry = medication_catalog.upsert(payload.name, payload.dosage, payload.unit, entry_id=payload.id)
    return entry.model_dump(mode="json")


@app.delete("/api/medications/{entry_id}")
async def delete_medication(entry_id: str):
    try:
        medication_catalog.remove(entry_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Medication not found")
    return {"status": "deleted", "id": entry_id}


# --- Voice ---

@app.websocket("/ws/voice/{kind}")
async def websocket_voice(websocket: WebSocket, kind: str):
    try:
        reading_kind = ReadingKind(kind)
    except ValueError:
        await websocket.close(code=4004, reason=f"Unknown reading kind: {kind}")
        return

    await websocket.accept()
    logger.info(f"🎙️ Voice WebSocket connected for {reading_kind.value}")
    handler = voice_handler_class(
        websocket,
        reading_kind,
        health_log=health_log,
        catalog=medication_catalog,
        extraction=extraction_service,
    )
    try:
        await handler.run()
    except Exception as e:
        logger.error(f"Voice WebSocket error: {e}")
        try:
            await websocket.close(code=1011)
        except RuntimeError as close_error:
            logger.debug(f"WebSocket already closed: {close_error}")


# --- Run Block ---
if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=config.PORT, log_level="info")
