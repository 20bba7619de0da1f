"""
Diagnostic Session Orchestrator

State machine for one diagnostic session:

    IDLE --submit--> LOADING --ok--> SUCCESS --new_scan--> IDLE
                        |                ^
                        +--fail--> ERROR --retry--> LOADING
                                     |
                                     +--reset--> IDLE

    any --select_history--> SUCCESS      (no analysis call)
    IDLE --run_demo--> SUCCESS           (no analysis call, no history)

Every subject-changing transition bumps the session generation. With
guard_stale enabled an analysis or deep-dive that resolves after its
generation has moved on is dropped instead of overwriting newer state.
"""
import time
import uuid
import logging
from typing import Callable, List, Optional, Union

from cropdoc.config import DEMO_MODE_ENABLED, GUARD_STALE_RESULTS
from cropdoc.errors import ERROR_HEADLINE, AnalysisError, InvalidTransitionError
from cropdoc.models import (
    DeepDiveResult,
    DeepDiveState,
    DeepDiveStatus,
    DiagnosticContext,
    DiagnosticResult,
    HistoryEntry,
    PlantCondition,
    SessionError,
    SessionState,
    SessionStatus,
)
from cropdoc.services.demo import DEMO_IMAGE_URL, DEMO_RESULT
from cropdoc.services.diagnosis import DiagnosticClient, compose_deep_dive_subject
from cropdoc.services.history import HistoryStore

logger = logging.getLogger(__name__)


def _new_entry_id() -> str:
    return uuid.uuid4().hex


class SessionOrchestrator:
    def __init__(
        self,
        client: DiagnosticClient,
        store: HistoryStore,
        guard_stale: bool = GUARD_STALE_RESULTS,
        demo_enabled: bool = DEMO_MODE_ENABLED,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = _new_entry_id,
    ):
        self.client = client
        self.store = store
        self.guard_stale = guard_stale
        self.demo_enabled = demo_enabled
        self._clock = clock
        self._id_factory = id_factory
        self.state = SessionState()
        self.generation = 0
        self._deep_dive_token = 0

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self.state.status

    @property
    def history(self) -> List[HistoryEntry]:
        return self.store.entries

    @property
    def diagnostic_context(self) -> Optional[DiagnosticContext]:
        if self.state.current_result is None:
            return None
        return DiagnosticContext(result=self.state.current_result, image=self.state.current_image)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _advance(self) -> int:
        self.generation += 1
        self._deep_dive_token += 1
        self.state.deep_dive = DeepDiveState()
        return self.generation

    def _is_stale(self, generation: int) -> bool:
        return self.guard_stale and generation != self.generation

    def _require(self, *allowed: SessionStatus, action: str):
        if self.state.status not in allowed:
            raise InvalidTransitionError(
                f"Cannot {action} while session is {self.state.status.value}"
            )

    async def submit(self, image: str) -> SessionState:
        """Analyse an image; the image is recorded before the call so retry can reuse it"""
        self._require(SessionStatus.IDLE, SessionStatus.LOADING, SessionStatus.ERROR, action="submit an image")

        generation = self._advance()
        self.state.status = SessionStatus.LOADING
        self.state.current_image = image
        self.state.current_result = None
        self.state.error = None
        logger.info(f"Session generation {generation}: analysis started")

        try:
            result = await self.client.analyze(image)
        except Exception as e:
            error = AnalysisError.from_exception(e)
            if self._is_stale(generation):
                logger.info(f"Discarding stale analysis failure (generation {generation} < {self.generation})")
                return self.state
            logger.error(f"Analysis failed: {error.details}")
            self._fail(error)
            return self.state

        if self._is_stale(generation):
            logger.info(f"Discarding stale analysis result (generation {generation} < {self.generation})")
            return self.state

        self._succeed(image, result)
        return self.state

    def _succeed(self, image: str, result: DiagnosticResult):
        # current_image is left as is: unguarded, a late result may sit beside a newer image
        self.state.status = SessionStatus.SUCCESS
        self.state.current_result = result
        self.state.error = None

        if result.is_plant:
            entry = HistoryEntry(
                id=self._id_factory(),
                timestamp=int(self._clock() * 1000),
                image=image,
                result=result,
            )
            self.store.append(entry)
        else:
            logger.info("Image is not a plant - result shown but not kept in history")

    def _fail(self, error: AnalysisError):
        self.state.status = SessionStatus.ERROR
        self.state.current_result = None
        self.state.error = SessionError(message=ERROR_HEADLINE, details=error.details)

    async def retry(self) -> SessionState:
        self._require(SessionStatus.ERROR, action="retry")
        if not self.state.current_image:
            logger.warning("Retry requested without a recorded image - returning to idle")
            self._advance()
            self.state = SessionState()
            return self.state
        return await self.submit(self.state.current_image)

    def reset(self) -> SessionState:
        """Leave the error screen, dropping the error and the recorded image"""
        self._require(SessionStatus.ERROR, action="reset")
        self._advance()
        self.state = SessionState()
        return self.state

    def new_scan(self) -> SessionState:
        """Leave a result for a fresh scan; history is untouched"""
        self._require(SessionStatus.SUCCESS, action="start a new scan")
        self._advance()
        self.state = SessionState()
        return self.state

    def select_history(self, entry_id: str) -> SessionState:
        """Show a stored diagnosis; the entry is the cached result, nothing is re-analysed"""
        entry = self.store.get(entry_id)
        self._advance()
        self.state.status = SessionStatus.SUCCESS
        self.state.current_image = entry.image
        self.state.current_result = entry.result
        self.state.error = None
        logger.info(f"Loaded history entry {entry_id} ({entry.result.crop} / {entry.result.disease})")
        return self.state

    def run_demo(self) -> SessionState:
        """Offline demo: canned result, no analysis call and no history write"""
        if not self.demo_enabled:
            raise InvalidTransitionError("Demo mode is disabled")
        self._require(SessionStatus.IDLE, action="run the demo")
        self._advance()
        self.state.status = SessionStatus.SUCCESS
        self.state.current_image = DEMO_IMAGE_URL
        self.state.current_result = DEMO_RESULT
        self.state.error = None
        return self.state

    def clear_history(self) -> List[HistoryEntry]:
        return self.store.clear()

    # ------------------------------------------------------------------
    # Deep dive (per recommendation, only within SUCCESS)
    # ------------------------------------------------------------------

    def _resolve_recommendation(self, result: DiagnosticResult, recommendation: Union[int, str]) -> str:
        if isinstance(recommendation, int):
            if not 0 <= recommendation < len(result.recommendations):
                raise IndexError(f"No recommendation #{recommendation}")
            return result.recommendations[recommendation]
        if recommendation not in result.recommendations:
            raise ValueError(f"'{recommendation}' is not one of the current recommendations")
        return recommendation

    async def learn_more(self, recommendation: Union[int, str]) -> Optional[DeepDiveResult]:
        """Run the grounded lookup for one recommendation.

        Returns the result, or None when the lookup failed or was superseded;
        failures leave the recommendation list in place.
        """
        self._require(SessionStatus.SUCCESS, action="look up a recommendation")
        result = self.state.current_result
        if result is None or result.condition == PlantCondition.NOT_A_PLANT:
            raise InvalidTransitionError("Treatment lookups need a plant diagnosis")
        text = self._resolve_recommendation(result, recommendation)

        self._deep_dive_token += 1
        token = self._deep_dive_token
        generation = self.generation
        self.state.deep_dive = DeepDiveState(status=DeepDiveStatus.PENDING, recommendation=text)

        try:
            deep_dive = await self.client.deep_dive(result.crop, compose_deep_dive_subject(result.disease, text))
        except Exception as e:
            logger.warning(f"Deep dive failed for '{text}': {e}")
            if token == self._deep_dive_token:
                self.state.deep_dive = DeepDiveState()
            return None

        if self.guard_stale and (token != self._deep_dive_token or generation != self.generation):
            logger.info(f"Discarding superseded deep dive for '{text}'")
            return None

        self.state.deep_dive = DeepDiveState(status=DeepDiveStatus.RESULT, recommendation=text, result=deep_dive)
        return deep_dive

    def reset_deep_dive(self) -> DeepDiveState:
        self._deep_dive_token += 1
        self.state.deep_dive = DeepDiveState()
        return self.state.deep_dive

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        state = self.state
        result = state.current_result
        deep_dive = state.deep_dive
        return {
            "status": state.status.value,
            "generation": self.generation,
            "current_image": state.current_image,
            "current_result": result.to_wire() if result else None,
            "condition": result.condition.value if result else None,
            "error": {"message": state.error.message, "details": state.error.details} if state.error else None,
            "deep_dive": {
                "status": deep_dive.status.value,
                "recommendation": deep_dive.recommendation,
                "result": deep_dive.result.model_dump() if deep_dive.result else None,
            },
            "history": [entry.summary() for entry in self.history],
        }
