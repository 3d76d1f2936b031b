"""Detection Engine - runs one archetype detection for a user.

Pipeline (single pass, nothing persisted until the end):
1. Load the user's response history and keep the latest answer per question
2. Match archetypes from the catalog
3. Bind matches to quick-win templates
4. Replace the user's system quick wins, then their detected archetypes,
   inside one store transaction
"""

import logging
from enum import Enum
from typing import Optional

from .binder import RecommendationBinder
from .matcher import ArchetypeMatcher
from .schema import (
    AssessmentSummary,
    DetectionResult,
    QuickWinProgress,
    ResponseSet,
    utc_now,
)
from .store import DetectionStore
from .summary import summarize_quick_wins, summarize_responses

logger = logging.getLogger(__name__)


class NoResponsesError(Exception):
    """Raised when a user has not answered the questionnaire yet."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No questionnaire responses found for user '{user_id}'")


class DetectionStage(str, Enum):
    """Stages of a detection run."""
    IDLE = "idle"
    RESPONSES_LOADED = "responses_loaded"
    MATCHED = "matched"
    BOUND = "bound"
    PERSISTED = "persisted"


class DetectionEngine:
    """Runs archetype detection against a store.

    The engine holds no per-user state; concurrent runs for different users
    need no coordination, and runs for the same user are serialized by the
    store's transaction.
    """

    def __init__(
        self,
        store: DetectionStore,
        matcher: Optional[ArchetypeMatcher] = None,
        binder: Optional[RecommendationBinder] = None,
    ):
        self.store = store
        self.matcher = matcher or ArchetypeMatcher()
        self.binder = binder or RecommendationBinder()

    def load_response_set(self, user_id: str) -> ResponseSet:
        """The user's latest answer per question."""
        return ResponseSet.from_history(user_id, self.store.load_latest_responses(user_id))

    def run_detection(self, user_id: str) -> DetectionResult:
        """Detect archetypes for a user and replace their system quick wins.

        Args:
            user_id: Resolved identifier of the user or organization

        Returns:
            The matches and quick wins that were persisted.

        Raises:
            NoResponsesError: The user has no responses; nothing is written.
            InvalidCatalogError: The catalog is malformed.
            StorageError: The store failed; stored state is unchanged.
        """
        stage = DetectionStage.IDLE
        logger.debug("Detection for user %s: %s", user_id, stage.value)

        responses = self.load_response_set(user_id)
        if responses.is_empty:
            raise NoResponsesError(user_id)
        stage = self._advance(user_id, stage, DetectionStage.RESPONSES_LOADED)

        archetypes = self.store.load_archetype_catalog()
        matches = self.matcher.match(responses, archetypes)
        stage = self._advance(user_id, stage, DetectionStage.MATCHED)

        templates = self.store.load_quick_win_templates([m.archetype_name for m in matches])
        quick_wins = self.binder.bind(matches, templates, user_id=user_id)
        stage = self._advance(user_id, stage, DetectionStage.BOUND)

        # Quick wins first: if the archetype write fails the transaction
        # rolls both back, and old archetypes never lose their quick wins.
        with self.store.transaction(user_id):
            self.store.replace_system_quick_wins(user_id, quick_wins)
            self.store.replace_archetype_matches(user_id, matches)
        stage = self._advance(user_id, stage, DetectionStage.PERSISTED)

        result = DetectionResult(
            user_id=user_id,
            matches=matches,
            quick_wins=quick_wins,
            used_fallback_match=any(m.is_fallback for m in matches),
            used_fallback_quick_wins=all(qw.archetype is None for qw in quick_wins),
            detected_at=utc_now(),
        )

        logger.info(
            "Detection for user %s: %d archetype(s)%s, %d quick win(s) from %d responses",
            user_id,
            len(matches),
            " (fallback)" if result.used_fallback_match else "",
            len(quick_wins),
            len(responses),
        )
        self._advance(user_id, stage, DetectionStage.IDLE)
        return result

    def clear_detection(self, user_id: str) -> int:
        """Remove the user's detected archetypes. Quick wins are kept."""
        removed = self.store.clear_archetype_matches(user_id)
        logger.info("Cleared %d archetype record(s) for user %s", removed, user_id)
        return removed

    def assessment_summary(self, user_id: str) -> AssessmentSummary:
        """Dimension averages for the user's latest responses."""
        responses = self.load_response_set(user_id)
        if responses.is_empty:
            raise NoResponsesError(user_id)
        return summarize_responses(responses)

    def quick_win_progress(self, user_id: str) -> QuickWinProgress:
        return summarize_quick_wins(self.store.load_quick_wins(user_id))

    @staticmethod
    def _advance(user_id: str, current: DetectionStage, target: DetectionStage) -> DetectionStage:
        logger.debug("Detection for user %s: %s -> %s", user_id, current.value, target.value)
        return target
