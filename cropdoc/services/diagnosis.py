import re
import json
import asyncio
import logging
from typing import Optional

import httpx
from openai import APIError
from pydantic import ValidationError

from cropdoc.config import API_TIMEOUT
from cropdoc.errors import GENERIC_ERROR_DETAILS, AnalysisError, DeepDiveError
from cropdoc.models import DeepDiveResult, DeepDiveSource, DiagnosticResult, Severity
from cropdoc.services.gateway import GroundedAnswer, SearchCapability, VisionCapability
from cropdoc.services.imaging import split_data_url

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_TITLE = "Source Link"

ANALYSIS_PROMPT = """Act as an expert Plant Pathologist and Agronomist.
Analyze the provided image of a crop.
1. Determine if the image contains a plant.
2. Identify the crop species.
3. Detect any diseases, pests, or nutrient deficiencies.
4. Provide detailed symptoms and organic/chemical treatment recommendations.
5. Be precise and scientific. If the plant is healthy, set disease to "Healthy".
6. If the image is not a plant, set isPlant to false and still fill every field."""

ANALYSIS_SCHEMA = {
    "type": "object",
    "properties": {
        "crop": {"type": "string", "description": "Name of the crop identified"},
        "disease": {"type": "string", "description": "Name of the disease detected, or 'Healthy' if none"},
        "confidence": {"type": "number", "description": "Confidence score between 0 and 1"},
        "isPlant": {"type": "boolean", "description": "Whether the image contains a plant"},
        "description": {"type": "string", "description": "A brief summary of the condition"},
        "symptoms": {"type": "array", "items": {"type": "string"}, "description": "List of visual symptoms"},
        "recommendations": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Step-by-step treatment or prevention actions",
        },
        "severity": {
            "type": "string",
            "enum": [s.value for s in Severity],
            "description": "Severity level",
        },
    },
    "required": ["crop", "disease", "confidence", "isPlant", "description", "symptoms", "recommendations", "severity"],
    "additionalProperties": False,
}

DEEP_DIVE_PROMPT = """Provide a comprehensive treatment protocol for {subject} affecting {crop}.
Include:
1. Specific organic treatments (e.g., Neem oil, specific bacteria).
2. Recommended chemical fungicides/pesticides if applicable.
3. Cultural practices to prevent recurrence.
4. Citing reliable agricultural extension sources."""


def extract_json_object(raw_text: str) -> str:
    """Strip markdown fences and surrounding prose from a JSON reply"""
    json_str = raw_text.strip()
    if "```" in json_str:
        match = re.search(r'```(?:json)?\s*([\s\S]*?)```', json_str)
        if match:
            json_str = match.group(1)

    start_idx = json_str.find("{")
    end_idx = json_str.rfind("}")
    if start_idx != -1 and end_idx != -1:
        json_str = json_str[start_idx:end_idx + 1]
    return json_str.strip()


def parse_diagnostic_result(raw_text: Optional[str]) -> DiagnosticResult:
    """Validate a model reply against the DiagnosticResult schema (all or nothing)"""
    if not raw_text:
        raise AnalysisError("No response from AI service")

    try:
        data = json.loads(extract_json_object(raw_text))
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse JSON from response: {e}")
        raise AnalysisError("Malformed analysis response", details=f"The analysis service returned invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise AnalysisError("Malformed analysis response", details="The analysis service did not return an object")

    try:
        return DiagnosticResult.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Analysis response failed schema validation: {e.error_count()} errors")
        raise AnalysisError("Invalid analysis response", details=f"The analysis response did not match the expected schema: {e}") from e


def source_title(title: Optional[str]) -> str:
    if not title:
        return DEFAULT_SOURCE_TITLE
    return title.split("|")[0].strip() or DEFAULT_SOURCE_TITLE


def compose_deep_dive_subject(disease: str, recommendation: str) -> str:
    return f"{disease} treatment: {recommendation}"


class DiagnosticClient:
    """Stateless wrapper around the analysis and grounded-search capabilities.

    Each call hits the capability exactly once; there is no retry and no
    cache here. Failures are normalised into AnalysisError / DeepDiveError.
    """

    def __init__(self, vision: VisionCapability, search: SearchCapability, timeout: Optional[float] = API_TIMEOUT):
        self.vision = vision
        self.search = search
        self.timeout = timeout

    async def analyze(self, image: str) -> DiagnosticResult:
        mime_type, image_data = split_data_url(image)
        logger.info(f"Starting crop analysis ({mime_type or 'remote url'})")

        try:
            raw_text = await asyncio.wait_for(
                self.vision.generate_json(ANALYSIS_PROMPT, image_data, mime_type, ANALYSIS_SCHEMA),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Analysis timeout after {self.timeout} seconds")
            raise AnalysisError("Analysis timed out", details=f"The analysis service did not respond within {self.timeout:g} seconds.") from e
        except httpx.TimeoutException as e:
            logger.error(f"HTTP timeout error: {e}")
            raise AnalysisError("Analysis timed out", details=str(e) or GENERIC_ERROR_DETAILS) from e
        except httpx.ConnectError as e:
            logger.error(f"HTTP connection error: {e}")
            raise AnalysisError("Connection failed", details=str(e) or GENERIC_ERROR_DETAILS) from e
        except APIError as e:
            logger.error(f"Analysis API error: {e}")
            raise AnalysisError("Analysis service error", details=e.message or GENERIC_ERROR_DETAILS) from e
        except AnalysisError:
            raise
        except Exception as e:
            logger.error(f"Error in crop analysis: {e}", exc_info=True)
            raise AnalysisError.from_exception(e) from e

        logger.info(f"Analysis raw response: {(raw_text or '')[:200]}...")
        result = parse_diagnostic_result(raw_text)
        logger.info(f"Crop analysed: {result.crop} / {result.disease} ({result.condition.value}, confidence {result.confidence:.2f})")
        return result

    async def deep_dive(self, crop: str, subject: str) -> DeepDiveResult:
        prompt = DEEP_DIVE_PROMPT.format(subject=subject, crop=crop)
        logger.info(f"🔍 Deep dive: '{subject}' on {crop}")

        try:
            answer: GroundedAnswer = await asyncio.wait_for(self.search.grounded_search(prompt), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Deep dive timeout after {self.timeout} seconds")
            raise DeepDiveError(f"Lookup timed out after {self.timeout:g} seconds") from e
        except Exception as e:
            logger.error(f"Deep dive failed: {e}")
            raise DeepDiveError(str(e) or "Lookup failed") from e

        sources = [
            DeepDiveSource(title=source_title(c.title), uri=c.uri)
            for c in answer.citations
            if c.uri
        ]
        logger.info(f"✓ Deep dive returned {len(sources)} sources")
        return DeepDiveResult(text=answer.text or "", sources=sources)
