"""Matcher - archetype detection phase of the engine.

Scores every archetype in the catalog against a user's responses and
returns the archetypes that are likely present, highest confidence first.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .catalog import ensure_valid_archetypes
from .schema import (
    ArchetypeDefinition,
    ArchetypeMatch,
    Dimension,
    Response,
    ResponseSet,
)

logger = logging.getLogger(__name__)

# Score evidence dominates comment evidence. These are fixed by design and
# are not read from configuration.
DIAGNOSTIC_WEIGHT = 0.7
SYMPTOM_WEIGHT = 0.3

# Archetypes must score strictly above this to be accepted.
ACCEPTANCE_THRESHOLD = 0.3

# Comparisons are made at this precision so float noise in the weighted
# sum never crosses the threshold or splits a tie.
CONFIDENCE_PRECISION = 9


@dataclass
class ArchetypeEvidence:
    """Evidence gathered for one archetype."""
    archetype: ArchetypeDefinition
    catalog_index: int
    low_scoring_count: int
    diagnostic_ratio: float
    symptom_ratio: float
    confidence: float
    matched_keywords: list[str] = field(default_factory=list)
    low_responses: list[Response] = field(default_factory=list)

    @property
    def rounded_confidence(self) -> float:
        return round(self.confidence, CONFIDENCE_PRECISION)

    @property
    def is_accepted(self) -> bool:
        return self.rounded_confidence > ACCEPTANCE_THRESHOLD

    @property
    def source_dimension(self) -> Optional[Dimension]:
        """Dimension of the lowest-scoring low answer, first in diagnostic order on ties."""
        if not self.low_responses:
            return None
        return min(self.low_responses, key=lambda r: r.score).dimension


class ArchetypeMatcher:
    """Detects systems archetypes from questionnaire responses.

    Matching principles:
    - Low scores on an archetype's diagnostic questions are the main evidence
    - Symptom keywords in the first diagnostic comment add supporting evidence
    - Missing answers are never evidence
    - Catalog order breaks ties
    - When nothing clears the bar, surface the single strongest signal,
      or nothing at all if there is no low score anywhere
    """

    def match(
        self,
        responses: ResponseSet,
        archetypes: Sequence[ArchetypeDefinition],
    ) -> list[ArchetypeMatch]:
        """Return likely archetypes ordered by descending confidence.

        Args:
            responses: The user's latest answer per question (may be partial)
            archetypes: Archetype definitions in priority order

        Returns:
            Accepted matches, or a single fallback match, or an empty list
            when no diagnostic question scored low.

        Raises:
            InvalidCatalogError: If any definition is unusable.
        """
        evidence = self.evaluate(responses, archetypes)

        accepted = [e for e in evidence if e.is_accepted]
        # sort() is stable, so equal confidences keep catalog order
        accepted.sort(key=lambda e: e.rounded_confidence, reverse=True)

        if accepted:
            logger.debug(
                "User %s: %d of %d archetypes accepted",
                responses.user_id, len(accepted), len(evidence),
            )
            return [self._build_match(e) for e in accepted]

        fallback = self._select_fallback(evidence)
        if fallback is None:
            logger.debug("User %s: no low-scoring diagnostic answers, no archetype detected", responses.user_id)
            return []

        logger.debug(
            "User %s: no archetype above %.2f, falling back to %s (%d low-scoring answers)",
            responses.user_id, ACCEPTANCE_THRESHOLD,
            fallback.archetype.name, fallback.low_scoring_count,
        )
        return [self._build_match(fallback, is_fallback=True)]

    def evaluate(
        self,
        responses: ResponseSet,
        archetypes: Sequence[ArchetypeDefinition],
    ) -> list[ArchetypeEvidence]:
        """Compute evidence for every archetype, in catalog order."""
        ensure_valid_archetypes(archetypes)
        return [
            self._evaluate_archetype(archetype, index, responses)
            for index, archetype in enumerate(archetypes)
        ]

    def _evaluate_archetype(
        self,
        archetype: ArchetypeDefinition,
        index: int,
        responses: ResponseSet,
    ) -> ArchetypeEvidence:
        """Score a single archetype."""
        question_ids = archetype.diagnostic_question_ids

        # Diagnostic evidence
        low_responses = []
        for question_id in question_ids:
            response = responses.get(question_id)
            if response is not None and response.is_low_scoring:
                low_responses.append(response)
        diagnostic_ratio = len(low_responses) / len(question_ids)

        # Symptom evidence from the first diagnostic question's comment
        matched_keywords = self._find_symptoms(archetype, responses.get(question_ids[0]))
        keywords = archetype.symptom_keywords
        symptom_ratio = len(matched_keywords) / len(keywords) if keywords else 0.0

        confidence = DIAGNOSTIC_WEIGHT * diagnostic_ratio + SYMPTOM_WEIGHT * symptom_ratio
        confidence = min(1.0, max(0.0, confidence))

        return ArchetypeEvidence(
            archetype=archetype,
            catalog_index=index,
            low_scoring_count=len(low_responses),
            diagnostic_ratio=diagnostic_ratio,
            symptom_ratio=symptom_ratio,
            confidence=confidence,
            matched_keywords=matched_keywords,
            low_responses=low_responses,
        )

    def _find_symptoms(
        self,
        archetype: ArchetypeDefinition,
        response: Optional[Response],
    ) -> list[str]:
        if response is None or not response.comment:
            return []
        comment = response.comment.lower()
        return [kw for kw in archetype.symptom_keywords if kw in comment]

    def _select_fallback(self, evidence: list[ArchetypeEvidence]) -> Optional[ArchetypeEvidence]:
        """Pick the first archetype, in catalog order, with the most low scores."""
        if not evidence:
            return None
        max_low = max(e.low_scoring_count for e in evidence)
        if max_low == 0:
            return None
        return next(e for e in evidence if e.low_scoring_count == max_low)

    def _build_match(self, evidence: ArchetypeEvidence, is_fallback: bool = False) -> ArchetypeMatch:
        # Accepted and fallback evidence always has at least one low answer:
        # symptom evidence alone caps confidence at exactly the threshold.
        return ArchetypeMatch(
            archetype_name=evidence.archetype.name,
            source_dimension=evidence.source_dimension,
            insight=self._generate_insight(evidence),
            confidence=evidence.confidence,
            diagnostic_ratio=evidence.diagnostic_ratio,
            symptom_ratio=evidence.symptom_ratio,
            low_scoring_count=evidence.low_scoring_count,
            matched_keywords=list(evidence.matched_keywords),
            is_fallback=is_fallback,
        )

    def _generate_insight(self, evidence: ArchetypeEvidence) -> str:
        total = len(evidence.archetype.diagnostic_question_ids)
        parts = []
        if evidence.archetype.key_pattern:
            parts.append(evidence.archetype.key_pattern.strip())
        parts.append(
            f"{evidence.low_scoring_count} of {total} diagnostic answers scored 3 or lower."
        )
        if evidence.matched_keywords:
            quoted = ", ".join(f"'{kw}'" for kw in evidence.matched_keywords)
            parts.append(f"Comments mention {quoted}.")
        return " ".join(parts)
