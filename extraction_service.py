"""
Extraction Service - Turns transcripts and photos into typed readings with Gemini
Every call is schema-constrained; responses are re-validated before use.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence

from google import genai
from google.genai import types
from pydantic import BaseModel, ValidationError

import config
from models import (
    MedicationCatalogEntry,
    MedicationMatch,
    ParsedBloodPressure,
    ParsedGlucose,
    ParsedMeal,
    ParsedMedication,
    ParsedWeight,
    ReadingKind,
)

logger = logging.getLogger("extraction-service")


class ExtractionError(Exception):
    pass


class UnsupportedImageError(ExtractionError):
    """The photo does not show what the reading kind needs (e.g. no glucose meter)"""

    def __init__(self, subject: "ImageSubject"):
        self.subject = subject
        super().__init__(f"Image does not appear to contain {subject.description}.")


class ImageSubject(Enum):
    GLUCOSE_METER = ("isMeter", "a glucose meter",
                     "Does this image contain a glucose meter or a continuous glucose monitor (CGM) screen?")
    FOOD = ("isFood", "food",
            "Does this image primarily contain edible food items intended for human consumption?")
    WEIGHT_SCALE = ("isScale", "a weight scale",
                    "Does this image contain a digital weight scale screen?")
    BLOOD_PRESSURE_MONITOR = ("isMonitor", "a blood pressure monitor",
                              "Does this image contain a digital blood pressure monitor screen?")

    def __init__(self, flag: str, description: str, question: str):
        self.flag = flag
        self.description = description
        self.question = question

    @property
    def prompt(self) -> str:
        return f"{self.question} Respond with only a JSON object containing a single boolean property '{self.flag}'."

    @property
    def schema(self) -> dict:
        return {
            "type": "OBJECT",
            "properties": {self.flag: {"type": "BOOLEAN"}},
            "required": [self.flag],
        }


# ============================================================================
# RESPONSE SCHEMAS
# ============================================================================

GLUCOSE_CONTEXTS = ["fasting", "before_meal", "after_meal", "random", "bedtime"]

GLUCOSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "value": {"type": "NUMBER", "description": "The numerical glucose value."},
        "unit": {"type": "STRING", "enum": ["mg/dL", "mmol/L"], "description": "The unit, either 'mg/dL' or 'mmol/L'."},
        "context": {"type": "STRING", "enum": GLUCOSE_CONTEXTS,
                    "description": "The context of the reading. Must be one of: 'fasting', 'before_meal', 'after_meal', 'random', 'bedtime'."}
    },
    "required": ["value", "unit", "context"]
}

WEIGHT_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "value": {"type": "NUMBER", "description": "The numerical weight value."},
        "unit": {"type": "STRING", "enum": ["kg", "lbs"], "description": "The unit, either 'kg' or 'lbs'."}
    },
    "required": ["value", "unit"]
}

BLOOD_PRESSURE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "systolic": {"type": "NUMBER"},
        "diastolic": {"type": "NUMBER"},
        "pulse": {"type": "NUMBER"}
    },
    "required": ["systolic", "diastolic", "pulse"]
}

_NUTRITION_PROPERTIES = {
    "carbohydrates": {"type": "NUMBER", "description": "Carbohydrates in grams."},
    "calories": {"type": "NUMBER", "description": "Total calories."},
    "protein": {"type": "NUMBER", "description": "Protein in grams."},
    "fat": {"type": "NUMBER", "description": "Fat in grams."}
}

MEAL_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "foodItems": {
            "type": "ARRAY",
            "description": "List of identified food items in the meal.",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": {"type": "STRING", "description": "Name of the food item."},
                    "nutrition": {
                        "type": "OBJECT",
                        "properties": _NUTRITION_PROPERTIES,
                        "required": ["carbohydrates", "calories", "protein", "fat"]
                    }
                },
                "required": ["name", "nutrition"]
            }
        },
        "totalNutrition": {
            "type": "OBJECT",
            "description": "The sum of nutrition for all food items.",
            "properties": _NUTRITION_PROPERTIES,
            "required": ["carbohydrates", "calories", "protein", "fat"]
        }
    },
    "required": ["foodItems", "totalNutrition"]
}

MEDICATION_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "name": {"type": "STRING", "description": "The best matching medication name from the provided list."},
        "quantity": {"type": "NUMBER", "description": "The number of pills or units taken."}
    },
    "required": ["name", "quantity"]
}

# ============================================================================
# PROMPTS
# ============================================================================

_CONTEXT_RULE = "The context must be one of the following strings: 'fasting', 'before_meal', 'after_meal', 'random', 'bedtime'."

_NUTRITIONIST = ("You are an expert nutritionist. Analyze the food {subject}. Identify each distinct food item and "
                 "estimate its nutritional content in grams for carbohydrates, protein, and fat, and total calories. "
                 "Provide a total for the entire meal. Be as accurate as possible.")


@dataclass(frozen=True)
class Extractor:
    parsed_model: type
    schema: dict
    text_prompt: str
    image_prompt: Optional[str] = None
    subject: Optional[ImageSubject] = None


EXTRACTORS: Dict[ReadingKind, Extractor] = {
    ReadingKind.GLUCOSE: Extractor(
        parsed_model=ParsedGlucose,
        schema=GLUCOSE_SCHEMA,
        text_prompt=(
            'Parse the glucose reading from this text: "{transcript}". Identify the value, the unit (mg/dL or mmol/L), '
            f"and the context. {_CONTEXT_RULE} For example, if the user says 'after lunch' or 'after eating', the "
            "context should be 'after_meal'. If they say 'before breakfast', it should be 'before_meal'. "
            "If they say 'on waking', it should be 'fasting'."
        ),
        image_prompt=(
            "Analyze the image of a glucose meter. Extract the primary numerical glucose reading. Also determine the "
            "unit (mg/dL or mmol/L) if visible. The context is likely 'random' unless text like 'before meal' or "
            f"'after meal' is clearly visible. {_CONTEXT_RULE}"
        ),
        subject=ImageSubject.GLUCOSE_METER,
    ),
    ReadingKind.MEAL: Extractor(
        parsed_model=ParsedMeal,
        schema=MEAL_SCHEMA,
        text_prompt=_NUTRITIONIST.format(subject='described in this text: "{transcript}"'),
        image_prompt=_NUTRITIONIST.format(subject="in this image"),
        subject=ImageSubject.FOOD,
    ),
    ReadingKind.WEIGHT: Extractor(
        parsed_model=ParsedWeight,
        schema=WEIGHT_SCHEMA,
        text_prompt='Parse the weight reading from this text: "{transcript}". Identify the value and the unit (must be \'kg\' or \'lbs\').',
        image_prompt="Analyze the image of a weight scale. Extract the numerical weight reading and the unit (must be 'kg' or 'lbs').",
        subject=ImageSubject.WEIGHT_SCALE,
    ),
    ReadingKind.BLOOD_PRESSURE: Extractor(
        parsed_model=ParsedBloodPressure,
        schema=BLOOD_PRESSURE_SCHEMA,
        text_prompt=(
            'Parse the blood pressure reading from text: "{transcript}". Identify systolic, diastolic, and pulse '
            "values. For example, '120 over 80 with a pulse of 65'."
        ),
        image_prompt="Analyze the image of a blood pressure monitor. Extract the systolic, diastolic, and pulse readings.",
        subject=ImageSubject.BLOOD_PRESSURE_MONITOR,
    ),
}


class ExtractionService:
    """
    Stateless Gemini calls for each reading kind.

    Transport and validation failures never escape: text/image extraction
    returns None and classify returns False. The only raised error is
    UnsupportedImageError, so callers can tell "wrong kind of photo" apart
    from "right photo, unreadable".
    """

    def __init__(self, client: Optional[genai.Client] = None, model: str = config.EXTRACTION_MODEL):
        self.client = client
        self.model = model

    def _get_client(self) -> genai.Client:
        """Lazy initialization of Gemini client - only when needed"""
        if self.client is None:
            api_key = config.GOOGLE_API_KEY
            if not api_key:
                raise ValueError("GOOGLE_API_KEY is required for Gemini extraction")
            self.client = genai.Client(api_key=api_key)
        return self.client

    async def _generate(self, contents, schema: dict) -> str:
        response = await self._get_client().aio.models.generate_content(
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=schema,
            ),
        )
        if not response.text:
            raise ExtractionError("Empty response from Gemini")
        return response.text.strip()

    @staticmethod
    def _validate(model: type, text: str) -> Optional[BaseModel]:
        # Gemini's schema compliance is advisory; check every field ourselves
        try:
            return model.model_validate_json(text, strict=True)
        except ValidationError as e:
            logger.warning(f"⚠️ Gemini response failed {model.__name__} validation: {e.error_count()} error(s)")
            return None

    async def classify(self, image: bytes, mime_type: str, subject: ImageSubject) -> bool:
        """Ask whether the image shows the subject. Fails safe: any error means False."""
        try:
            image_part = types.Part.from_bytes(data=image, mime_type=mime_type)
            text = await self._generate([image_part, subject.prompt], subject.schema)
            parsed = json.loads(text)
            return parsed.get(subject.flag) is True
        except Exception as e:
            logger.error(f"❌ Error validating {subject.description} image: {e}")
            return False

    async def extract_from_text(self, transcript: str, kind: ReadingKind):
        """Parse a reading of the given kind from free text. Returns None when it can't."""
        extractor = EXTRACTORS.get(kind)
        if extractor is None:
            raise ValueError(f"No text extraction for {kind.value}, use match_medication")
        try:
            text = await self._generate(extractor.text_prompt.format(transcript=transcript), extractor.schema)
        except Exception as e:
            logger.error(f"❌ Error parsing {kind.value} from text with Gemini: {e}")
            return None
        return self._validate(extractor.parsed_model, text)

    async def extract_from_image(self, image: bytes, mime_type: str, kind: ReadingKind):
        """
        Parse a reading from a photo of the instrument (or of the meal).

        Raises UnsupportedImageError when the photo shows something else;
        returns None when the photo is right but unreadable.
        """
        extractor = EXTRACTORS.get(kind)
        if extractor is None or extractor.subject is None:
            raise ValueError(f"No photo extraction for {kind.value}")

        if not await self.classify(image, mime_type, extractor.subject):
            raise UnsupportedImageError(extractor.subject)

        try:
            image_part = types.Part.from_bytes(data=image, mime_type=mime_type)
            text = await self._generate([image_part, extractor.image_prompt], extractor.schema)
        except Exception as e:
            logger.error(f"❌ Error parsing {kind.value} from image with Gemini: {e}")
            return None
        return self._validate(extractor.parsed_model, text)

    async def match_medication(self, transcript: str, catalog: Sequence[MedicationCatalogEntry]) -> Optional[MedicationMatch]:
        """
        Identify which catalog medication was mentioned and how many were taken.
        Example: "Metformin two pills" -> Metformin, quantity 2
        """
        if not catalog:
            return None

        medication_names = [m.name for m in catalog]
        prompt = (
            f"Given this list of medications: {json.dumps(medication_names)}. The user said: \"{transcript}\". "
            "Identify which medication from the list was mentioned and the quantity taken. The quantity can be a "
            "word (e.g., \"one\", \"two pills\") or a number (e.g., \"1\", \"2\"). Respond with a JSON object "
            "containing the matched medication 'name' and the numerical 'quantity'."
        )

        try:
            text = await self._generate(prompt, MEDICATION_SCHEMA)
        except Exception as e:
            logger.error(f"❌ Error parsing medication from text with Gemini: {e}")
            return None

        parsed = self._validate(ParsedMedication, text)
        if parsed is None:
            return None
        if parsed.quantity <= 0:
            logger.warning(f"⚠️ Discarding medication match with quantity {parsed.quantity}")
            return None

        wanted = parsed.name.lower()
        for entry in catalog:
            if entry.name.lower() == wanted:
                logger.info(f"💊 Matched '{transcript}' to {entry.name} x {parsed.quantity}")
                return MedicationMatch(entry=entry, quantity=parsed.quantity)

        logger.info(f"🔍 '{parsed.name}' is not in the medication catalog")
        return None
