"""
Health log data model

Readings are immutable once created. Parsed* models are what the extraction
service returns before a reading gets an id and timestamp.
"""

from enum import Enum
from typing import Dict, List, Literal, Optional, Union, Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field


class ReadingKind(str, Enum):
    GLUCOSE = "glucose"
    MEAL = "meal"
    MEDICATION = "medication"
    WEIGHT = "weight"
    BLOOD_PRESSURE = "blood_pressure"


class Source(str, Enum):
    MANUAL = "manual"
    VOICE = "voice"
    PHOTO = "photo"


class GlucoseUnit(str, Enum):
    MG_DL = "mg/dL"
    MMOL_L = "mmol/L"


class GlucoseContext(str, Enum):
    FASTING = "fasting"
    BEFORE_MEAL = "before_meal"
    AFTER_MEAL = "after_meal"
    RANDOM = "random"
    BEDTIME = "bedtime"


class WeightUnit(str, Enum):
    KG = "kg"
    LBS = "lbs"


class MealType(str, Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACK = "snack"


class Nutrition(BaseModel):
    model_config = ConfigDict(frozen=True)

    carbohydrates: float
    calories: float
    protein: float
    fat: float


class FoodItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    nutrition: Nutrition


# --- Readings ---

class Reading(BaseModel):
    """Base for every logged measurement or event"""
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: AwareDatetime
    source: Source
    transcript: Optional[str] = None


class GlucoseReading(Reading):
    kind: Literal[ReadingKind.GLUCOSE] = ReadingKind.GLUCOSE
    value: float
    unit: GlucoseUnit
    context: GlucoseContext


class WeightReading(Reading):
    kind: Literal[ReadingKind.WEIGHT] = ReadingKind.WEIGHT
    value: float
    unit: WeightUnit


class BloodPressureReading(Reading):
    kind: Literal[ReadingKind.BLOOD_PRESSURE] = ReadingKind.BLOOD_PRESSURE
    systolic: float
    diastolic: float
    pulse: float


class MedicationEntry(Reading):
    kind: Literal[ReadingKind.MEDICATION] = ReadingKind.MEDICATION
    name: str
    dosage: float
    unit: str
    quantity: float = Field(gt=0)


class MealEntry(Reading):
    kind: Literal[ReadingKind.MEAL] = ReadingKind.MEAL
    meal_type: Optional[MealType] = None
    food_items: List[FoodItem]
    total_nutrition: Nutrition


READING_TYPES: Dict[ReadingKind, type] = {
    ReadingKind.GLUCOSE: GlucoseReading,
    ReadingKind.MEAL: MealEntry,
    ReadingKind.MEDICATION: MedicationEntry,
    ReadingKind.WEIGHT: WeightReading,
    ReadingKind.BLOOD_PRESSURE: BloodPressureReading,
}

AnyReading = Union[GlucoseReading, MealEntry, MedicationEntry, WeightReading, BloodPressureReading]


class MedicationCatalogEntry(BaseModel):
    """A medication the user takes, referenced when logging doses"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    dosage: float
    unit: str


# --- Extraction results ---

class ParsedGlucose(BaseModel):
    kind: Literal[ReadingKind.GLUCOSE] = ReadingKind.GLUCOSE
    value: float
    unit: GlucoseUnit
    context: GlucoseContext

    def reading_fields(self) -> Dict[str, Any]:
        return {"value": self.value, "unit": self.unit, "context": self.context}


class ParsedWeight(BaseModel):
    kind: Literal[ReadingKind.WEIGHT] = ReadingKind.WEIGHT
    value: float
    unit: WeightUnit

    def reading_fields(self) -> Dict[str, Any]:
        return {"value": self.value, "unit": self.unit}


class ParsedBloodPressure(BaseModel):
    kind: Literal[ReadingKind.BLOOD_PRESSURE] = ReadingKind.BLOOD_PRESSURE
    systolic: float
    diastolic: float
    pulse: float

    def reading_fields(self) -> Dict[str, Any]:
        return {"systolic": self.systolic, "diastolic": self.diastolic, "pulse": self.pulse}


class ParsedMeal(BaseModel):
    # Gemini responds with the camelCase names from the response schema
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal[ReadingKind.MEAL] = ReadingKind.MEAL
    food_items: List[FoodItem] = Field(alias="foodItems")
    total_nutrition: Nutrition = Field(alias="totalNutrition")

    def reading_fields(self) -> Dict[str, Any]:
        return {"food_items": list(self.food_items), "total_nutrition": self.total_nutrition}


class ParsedMedication(BaseModel):
    """Raw medication answer from Gemini, before catalog matching"""
    name: str
    quantity: float


class MedicationMatch(BaseModel):
    kind: Literal[ReadingKind.MEDICATION] = ReadingKind.MEDICATION
    entry: MedicationCatalogEntry
    quantity: float

    def reading_fields(self) -> Dict[str, Any]:
        return {
            "name": self.entry.name,
            "dosage": self.entry.dosage,
            "unit": self.entry.unit,
            "quantity": self.quantity,
        }


ParsedReading = Union[ParsedGlucose, ParsedWeight, ParsedBloodPressure, ParsedMeal, MedicationMatch]
