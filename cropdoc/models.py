from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, field_validator

HEALTHY_SENTINEL = "Healthy"


class Severity(str, Enum):
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"
    CRITICAL = "Critical"


class PlantCondition(str, Enum):
    """Tagged outcome of a diagnosis, used instead of comparing disease names"""
    NOT_A_PLANT = "not_a_plant"
    HEALTHY = "healthy"
    DISEASED = "diseased"


class DiagnosticResult(BaseModel):
    """Structured result of a single image analysis.

    Every field is required and strictly typed; a response that does not match
    this shape exactly is rejected as a whole.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    crop: StrictStr
    disease: StrictStr
    confidence: float = Field(ge=0.0, le=1.0)
    is_plant: StrictBool = Field(alias="isPlant")
    description: StrictStr
    symptoms: Tuple[StrictStr, ...]
    recommendations: Tuple[StrictStr, ...]
    severity: Severity

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_is_number(cls, value):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("confidence must be a number between 0 and 1")
        return value

    @property
    def condition(self) -> PlantCondition:
        if not self.is_plant:
            return PlantCondition.NOT_A_PLANT
        if self.disease.strip().casefold() == HEALTHY_SENTINEL.casefold():
            return PlantCondition.HEALTHY
        return PlantCondition.DISEASED

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class HistoryEntry(BaseModel):
    """A completed plant analysis kept in the bounded history"""
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: int  # epoch milliseconds
    image: str  # data URL or remote image URL
    result: DiagnosticResult

    def summary(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "crop": self.result.crop,
            "disease": self.result.disease,
            "severity": self.result.severity.value,
            "condition": self.result.condition.value,
        }


class DeepDiveSource(BaseModel):
    title: str
    uri: str


class DeepDiveResult(BaseModel):
    """Grounded treatment detail for one recommendation (never persisted)"""
    text: str
    sources: List[DeepDiveSource] = Field(default_factory=list)


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatMessage:
    role: ChatRole
    text: str

    def to_dict(self) -> dict:
        return {"role": self.role.value, "text": self.text}


@dataclass(frozen=True)
class DiagnosticContext:
    """Read-only view of the current diagnosis handed to the assistant.

    Equality doubles as the context identity: a chat log belongs to one
    (image, result) pair.
    """
    result: DiagnosticResult
    image: Optional[str] = None

    @property
    def crop(self) -> str:
        return self.result.crop

    @property
    def disease(self) -> str:
        return self.result.disease


class SessionStatus(str, Enum):
    IDLE = "IDLE"
    LOADING = "LOADING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


@dataclass(frozen=True)
class SessionError:
    message: str
    details: str


class DeepDiveStatus(str, Enum):
    RECOMMENDATIONS = "recommendations"
    PENDING = "pending"
    RESULT = "result"


@dataclass
class DeepDiveState:
    status: DeepDiveStatus = DeepDiveStatus.RECOMMENDATIONS
    recommendation: Optional[str] = None
    result: Optional[DeepDiveResult] = None


@dataclass
class SessionState:
    status: SessionStatus = SessionStatus.IDLE
    current_image: Optional[str] = None
    current_result: Optional[DiagnosticResult] = None
    error: Optional[SessionError] = None
    deep_dive: DeepDiveState = field(default_factory=DeepDiveState)
