"""
Shared fixtures and deterministic stand-ins for the model provider.

Nothing here talks to the network: capabilities and the diagnostic client
are replaced by small stubs that record their calls.
"""
import asyncio
import json
from typing import Dict, List

import pytest

from cropdoc.errors import AnalysisError, PersistenceError
from cropdoc.models import DeepDiveResult, DeepDiveSource, DiagnosticResult
from cropdoc.services.gateway import Citation, GroundedAnswer
from cropdoc.services.history import HistoryStore, MemoryRecordBackend

IMAGE_A = "data:image/jpeg;base64,SU1BR0UtQQ=="
IMAGE_B = "data:image/jpeg;base64,SU1BR0UtQg=="


def make_payload(**overrides) -> dict:
    payload = {
        "crop": "Tomato",
        "disease": "Late Blight",
        "confidence": 0.98,
        "isPlant": True,
        "description": "Oomycete infection spreading in cool, wet weather.",
        "symptoms": ["Water-soaked lesions", "White growth on leaf undersides"],
        "recommendations": [
            "Apply copper-based fungicide",
            "Remove infected foliage",
            "Switch to drip irrigation",
        ],
        "severity": "High",
    }
    payload.update(overrides)
    return payload


def make_result(**overrides) -> DiagnosticResult:
    return DiagnosticResult.model_validate(make_payload(**overrides))


class StubVision:
    """VisionCapability returning queued replies (str) or raising queued exceptions"""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: List[dict] = []

    async def generate_json(self, prompt, image_data, mime_type, schema):
        self.calls.append({"prompt": prompt, "image_data": image_data, "mime_type": mime_type, "schema": schema})
        reply = self.replies.pop(0) if self.replies else None
        if isinstance(reply, BaseException):
            raise reply
        return reply


class StubSearch:
    def __init__(self, answer=None):
        self.answer = answer if answer is not None else GroundedAnswer(
            text="Use a fixed copper protocol.",
            citations=[Citation(uri="https://extension.example.edu/late-blight", title="Late Blight | Extension")],
        )
        self.calls: List[str] = []

    async def grounded_search(self, prompt):
        self.calls.append(prompt)
        if isinstance(self.answer, BaseException):
            raise self.answer
        return self.answer


class StubChat:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: List[List[Dict[str, str]]] = []

    async def chat(self, messages):
        self.calls.append(messages)
        reply = self.replies.pop(0) if self.replies else "Keep leaves dry."
        if isinstance(reply, BaseException):
            raise reply
        return reply


class StubDiagnosticClient:
    """Diagnostic client keyed by image payload.

    outcomes maps an image to a DiagnosticResult or an exception; gates maps
    an image to an asyncio.Event the call waits on before resolving.
    """

    def __init__(self, outcomes=None, deep_dive=None):
        self.outcomes = dict(outcomes or {})
        self.gates: Dict[str, asyncio.Event] = {}
        self.deep_dive_outcome = deep_dive
        self.analyze_calls: List[str] = []
        self.deep_dive_calls: List[tuple] = []

    async def analyze(self, image: str) -> DiagnosticResult:
        self.analyze_calls.append(image)
        gate = self.gates.get(image)
        if gate is not None:
            await gate.wait()
        outcome = self.outcomes.get(image)
        if outcome is None:
            raise AnalysisError("")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def deep_dive(self, crop: str, subject: str) -> DeepDiveResult:
        self.deep_dive_calls.append((crop, subject))
        outcome = self.deep_dive_outcome
        if outcome is None:
            outcome = DeepDiveResult(
                text="Spray copper every 7 days.",
                sources=[DeepDiveSource(title="Extension", uri="https://extension.example.edu")],
            )
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FailingBackend(MemoryRecordBackend):
    """Reads work, every write fails"""

    name = "failing"

    def write(self, key, value):
        raise PersistenceError("disk full")


@pytest.fixture
def backend() -> MemoryRecordBackend:
    return MemoryRecordBackend()


@pytest.fixture
def store(backend) -> HistoryStore:
    return HistoryStore(backend)


def dump_entries(entries) -> str:
    return json.dumps([e.model_dump(mode="json", by_alias=True) for e in entries])
