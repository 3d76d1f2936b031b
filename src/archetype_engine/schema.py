"""Pydantic models for the Archetype Detection Engine.

Input schemas for questionnaire responses and the archetype catalog, and
output schemas for detected archetypes and quick-win recommendations.
Enum values match the strings stored by the health-check application.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


# A response at or below this score counts as evidence for an archetype.
LOW_SCORE_THRESHOLD = 3


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Make a timestamp timezone-aware in UTC. Naive values are taken as local time."""
    return value.astimezone(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class Dimension(str, Enum):
    """The three assessment axes."""
    EFFICIENCY = "Efficiency"
    EFFECTIVENESS = "Effectiveness"
    EXCELLENCE = "Excellence"

    @classmethod
    def from_string(cls, value: str) -> "Dimension":
        """Parse a dimension name, ignoring case and surrounding whitespace."""
        mapping = {d.value.lower(): d for d in cls}
        try:
            return mapping[value.strip().lower()]
        except KeyError:
            raise ValueError(
                f"Unknown dimension '{value}'. Expected one of: "
                f"{', '.join(d.value for d in cls)}"
            ) from None


class ImpactLevel(str, Enum):
    """Expected impact of a quick win."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class QuickWinSource(str, Enum):
    """Who created a quick win."""
    SYSTEM = "system"  # Generated by archetype detection
    USER = "user"  # Entered by the user, never touched by detection


class QuickWinStatus(str, Enum):
    """Progress of a quick win."""
    TODO = "To Do"
    IN_PROGRESS = "In Progress"
    DONE = "Done"

    @classmethod
    def from_string(cls, value: str) -> "QuickWinStatus":
        """Parse a status, accepting 'todo', 'in_progress', 'done' style input."""
        normalized = value.strip().lower().replace("_", "").replace("-", "").replace(" ", "")
        mapping = {
            "todo": cls.TODO,
            "inprogress": cls.IN_PROGRESS,
            "done": cls.DONE,
        }
        if normalized not in mapping:
            raise ValueError(f"Unknown quick win status '{value}'")
        return mapping[normalized]


class ScoreColor(str, Enum):
    """Traffic-light band for an average score."""
    GREEN = "Green"
    YELLOW = "Yellow"
    RED = "Red"


# =============================================================================
# Responses
# =============================================================================


class Response(BaseModel):
    """A single answer to a questionnaire item."""
    model_config = ConfigDict(frozen=True)

    question_id: int = Field(..., ge=1)
    score: int = Field(..., ge=1, le=5, description="Self-rating from 1 (poor) to 5 (excellent)")
    comment: Optional[str] = None
    dimension: Dimension
    submitted_at: datetime = Field(default_factory=utc_now)

    @field_validator("dimension", mode="before")
    @classmethod
    def _parse_dimension(cls, value):
        if isinstance(value, str):
            return Dimension.from_string(value)
        return value

    @field_validator("submitted_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_low_scoring(self) -> bool:
        return self.score <= LOW_SCORE_THRESHOLD


class ResponseSet(BaseModel):
    """A user's latest answer per question.

    Response history is append-only, so the same question can appear more
    than once. Build with ``from_history`` to keep only the latest answer.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    answers: dict[int, Response] = Field(default_factory=dict)

    @classmethod
    def from_history(cls, user_id: str, history: Iterable[Response]) -> "ResponseSet":
        """Collapse a response history into one response per question.

        The response with the latest ``submitted_at`` wins. When timestamps
        are equal, the one appearing later in ``history`` wins.
        """
        latest: dict[int, Response] = {}
        for response in history:
            current = latest.get(response.question_id)
            if current is None or response.submitted_at >= current.submitted_at:
                latest[response.question_id] = response
        return cls(user_id=user_id, answers=dict(sorted(latest.items())))

    def get(self, question_id: int) -> Optional[Response]:
        return self.answers.get(question_id)

    @property
    def responses(self) -> list[Response]:
        """Responses ordered by question id."""
        return list(self.answers.values())

    def by_dimension(self, dimension: Dimension) -> list[Response]:
        return [r for r in self.answers.values() if r.dimension == dimension]

    @property
    def is_empty(self) -> bool:
        return not self.answers

    def __len__(self) -> int:
        return len(self.answers)


# =============================================================================
# Archetype Catalog
# =============================================================================


class ArchetypeDefinition(BaseModel):
    """A systems archetype and the questionnaire evidence that points to it.

    Structural rules (non-empty diagnostic list, unique names) are checked
    by ``archetype_engine.catalog.CatalogValidator`` so that every problem in
    a catalog is reported together.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    symptom_keywords: list[str] = Field(
        default_factory=list,
        description="Phrases searched for in the first diagnostic question's comment"
    )
    diagnostic_question_ids: list[int] = Field(
        default_factory=list,
        description="Questions whose low scores indicate this archetype; the first one carries the symptom comment"
    )
    key_pattern: str = ""

    @field_validator("symptom_keywords")
    @classmethod
    def _normalize_keywords(cls, value: list[str]) -> list[str]:
        # Keywords behave as a set; keep first-seen order for stable output.
        # Padding is significant: " fix " only matches a standalone word.
        seen: list[str] = []
        for keyword in value:
            normalized = keyword.lower()
            if normalized.strip() and normalized not in seen:
                seen.append(normalized)
        return seen


class QuickWinTemplate(BaseModel):
    """A catalog recommendation attached to an archetype."""
    model_config = ConfigDict(frozen=True)

    archetype_name: str
    title: str
    description: str
    impact_level: ImpactLevel = ImpactLevel.MEDIUM


class ArchetypeCatalog(BaseModel):
    """The complete archetype table.

    Archetype order is a priority order: it breaks confidence ties and picks
    the single fallback archetype.
    """
    version: str = "1.0.0"
    archetypes: list[ArchetypeDefinition] = Field(default_factory=list)
    quick_win_templates: list[QuickWinTemplate] = Field(default_factory=list)

    @property
    def names(self) -> list[str]:
        return [a.name for a in self.archetypes]

    def get(self, name: str) -> Optional[ArchetypeDefinition]:
        return next((a for a in self.archetypes if a.name == name), None)

    def templates_for(self, archetype_names: Iterable[str]) -> list[QuickWinTemplate]:
        """Templates for the given archetypes, in catalog order."""
        wanted = set(archetype_names)
        return [t for t in self.quick_win_templates if t.archetype_name in wanted]


# =============================================================================
# Detection Output
# =============================================================================


class ArchetypeMatch(BaseModel):
    """An archetype the matcher believes is present."""
    archetype_name: str
    source_dimension: Dimension
    insight: str
    confidence: float = Field(..., ge=0.0, le=1.0)

    # Scoring breakdown
    diagnostic_ratio: float = 0.0
    symptom_ratio: float = 0.0
    low_scoring_count: int = 0
    matched_keywords: list[str] = Field(default_factory=list)
    is_fallback: bool = Field(
        False,
        description="Selected by the fallback policy rather than by clearing the confidence bar"
    )


class DetectedArchetype(BaseModel):
    """A persisted archetype match owned by a user."""
    user_id: str
    archetype_name: str
    source_dimension: Dimension
    insight: str
    confidence: float
    is_fallback: bool = False
    detected_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_match(
        cls,
        user_id: str,
        match: ArchetypeMatch,
        detected_at: Optional[datetime] = None,
    ) -> "DetectedArchetype":
        return cls(
            user_id=user_id,
            archetype_name=match.archetype_name,
            source_dimension=match.source_dimension,
            insight=match.insight,
            confidence=match.confidence,
            is_fallback=match.is_fallback,
            detected_at=detected_at or utc_now(),
        )


class QuickWin(BaseModel):
    """A short-term recommended action."""
    id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    title: str
    description: str = ""
    source: QuickWinSource
    archetype: Optional[str] = None
    dimension: Dimension
    impact_level: ImpactLevel = ImpactLevel.MEDIUM
    status: QuickWinStatus = QuickWinStatus.TODO
    notes: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class DetectionResult(BaseModel):
    """Everything produced by one detection run."""
    user_id: str
    matches: list[ArchetypeMatch] = Field(default_factory=list)
    quick_wins: list[QuickWin] = Field(default_factory=list)
    used_fallback_match: bool = False
    used_fallback_quick_wins: bool = False
    detected_at: datetime = Field(default_factory=utc_now)

    @property
    def primary_archetype(self) -> Optional[str]:
        return self.matches[0].archetype_name if self.matches else None


# =============================================================================
# Summaries
# =============================================================================


class DimensionScore(BaseModel):
    """Average self-rating for one dimension."""
    dimension: Dimension
    average_score: float
    response_count: int
    color: ScoreColor


class AssessmentSummary(BaseModel):
    """Dimension averages for a user's latest responses."""
    user_id: str
    dimensions: list[DimensionScore] = Field(default_factory=list)
    overall_score: float = 0.0
    overall_color: ScoreColor = ScoreColor.RED
    total_responses: int = 0

    @property
    def weakest_dimension(self) -> Optional[Dimension]:
        answered = [d for d in self.dimensions if d.response_count > 0]
        if not answered:
            return None
        return min(answered, key=lambda d: d.average_score).dimension


class QuickWinProgress(BaseModel):
    """Completion counts across a user's quick wins."""
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    not_started: int = 0
    completion_rate: float = Field(0.0, description="Percentage of quick wins marked Done")
    system_generated: int = 0
    user_created: int = 0
