"""
In-memory health log and medication catalog.

Data lives for the lifetime of the process. Identifiers and timestamps are
assigned here, at the boundary, through an injectable id factory and clock.
"""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from models import (
    READING_TYPES,
    AnyReading,
    MedicationCatalogEntry,
    ParsedReading,
    ReadingKind,
    Source,
)

logger = logging.getLogger("health-log")


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HealthLog:
    """
    Ordered, append-only collection of readings across all kinds.

    Insertion order is preserved so that readings with equal timestamps keep
    a stable order in the combined view.
    """

    def __init__(self, id_factory: Callable[[], str] = new_id, clock: Callable[[], datetime] = utc_now):
        self._id_factory = id_factory
        self._clock = clock
        self._readings: List[AnyReading] = []
        self._lock = threading.Lock()
        self.version = 0

    def append(self, reading: AnyReading) -> AnyReading:
        with self._lock:
            self._readings.append(reading)
            self.version += 1
        logger.info(f"📝 Logged {reading.kind.value} reading {reading.id} ({reading.source.value})")
        return reading

    def create(
        self,
        kind: ReadingKind,
        source: Source = Source.MANUAL,
        timestamp: Optional[datetime] = None,
        transcript: Optional[str] = None,
        **fields,
    ) -> AnyReading:
        """Build a reading of the given kind and append it. Raises pydantic.ValidationError on bad fields."""
        reading_type = READING_TYPES[ReadingKind(kind)]
        reading = reading_type(
            id=self._id_factory(),
            timestamp=timestamp or self._clock(),
            source=source,
            transcript=transcript,
            **fields,
        )
        return self.append(reading)

    def record_parsed(self, parsed: ParsedReading, source: Source, transcript: Optional[str] = None) -> AnyReading:
        return self.create(parsed.kind, source=source, transcript=transcript, **parsed.reading_fields())

    def readings(self, kind: Optional[ReadingKind] = None) -> List[AnyReading]:
        with self._lock:
            snapshot = list(self._readings)
        if kind is None:
            return snapshot
        return [r for r in snapshot if r.kind == kind]

    def combined(self) -> List[AnyReading]:
        """All readings, newest first. sorted() is stable, so ties stay in insertion order."""
        return sorted(self.readings(), key=lambda r: r.timestamp, reverse=True)

    def __len__(self):
        return len(self._readings)


class MedicationCatalog:
    """User-maintained list of medications, keyed by id"""

    def __init__(self, id_factory: Callable[[], str] = new_id):
        self._id_factory = id_factory
        self._entries: Dict[str, MedicationCatalogEntry] = {}
        self._lock = threading.Lock()

    def list(self) -> List[MedicationCatalogEntry]:
        with self._lock:
            return list(self._entries.values())

    def get(self, entry_id: str) -> Optional[MedicationCatalogEntry]:
        return self._entries.get(entry_id)

    def upsert(self, name: str, dosage: float, unit: str, entry_id: Optional[str] = None) -> MedicationCatalogEntry:
        """Replace the entry with this id, or add a new one when the id is unknown or missing"""
        with self._lock:
            if entry_id is None or entry_id not in self._entries:
                entry_id = entry_id or self._id_factory()
                action = "Added"
            else:
                action = "Updated"
            entry = MedicationCatalogEntry(id=entry_id, name=name, dosage=dosage, unit=unit)
            # dicts keep insertion order, so replacing in place keeps the entry's position
            self._entries[entry_id] = entry
        logger.info(f"💊 {action} catalog medication {entry.name} ({entry_id})")
        return entry

    def remove(self, entry_id: str) -> MedicationCatalogEntry:
        with self._lock:
            entry = self._entries.pop(entry_id)
        logger.info(f"🗑️ Removed catalog medication {entry.name} ({entry_id})")
        return entry
