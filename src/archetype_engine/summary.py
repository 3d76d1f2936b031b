"""Assessment and quick-win summaries shown alongside detection results."""

from typing import Optional, Sequence

from .config import ScoreBandsConfig, get_config
from .schema import (
    AssessmentSummary,
    Dimension,
    DimensionScore,
    QuickWin,
    QuickWinProgress,
    QuickWinSource,
    QuickWinStatus,
    ResponseSet,
    ScoreColor,
)


def score_color(score: float, bands: Optional[ScoreBandsConfig] = None) -> ScoreColor:
    """Map an average 1-5 score to its colour band."""
    bands = bands or get_config().score_bands
    if score >= bands.green_threshold:
        return ScoreColor.GREEN
    if score >= bands.yellow_threshold:
        return ScoreColor.YELLOW
    return ScoreColor.RED


def summarize_responses(
    responses: ResponseSet,
    bands: Optional[ScoreBandsConfig] = None,
) -> AssessmentSummary:
    """Average score per dimension plus an overall average.

    Dimensions without answers report 0.0 / Red and are left out of the
    overall average.
    """
    bands = bands or get_config().score_bands
    dimensions = []
    for dimension in Dimension:
        scores = [r.score for r in responses.by_dimension(dimension)]
        average = sum(scores) / len(scores) if scores else 0.0
        dimensions.append(DimensionScore(
            dimension=dimension,
            average_score=round(average, 2),
            response_count=len(scores),
            color=score_color(average, bands),
        ))

    all_scores = [r.score for r in responses.responses]
    overall = sum(all_scores) / len(all_scores) if all_scores else 0.0

    return AssessmentSummary(
        user_id=responses.user_id,
        dimensions=dimensions,
        overall_score=round(overall, 2),
        overall_color=score_color(overall, bands),
        total_responses=len(all_scores),
    )


def summarize_quick_wins(quick_wins: Sequence[QuickWin]) -> QuickWinProgress:
    """Count quick wins by status and source."""
    total = len(quick_wins)
    completed = sum(1 for qw in quick_wins if qw.status == QuickWinStatus.DONE)
    return QuickWinProgress(
        total=total,
        completed=completed,
        in_progress=sum(1 for qw in quick_wins if qw.status == QuickWinStatus.IN_PROGRESS),
        not_started=sum(1 for qw in quick_wins if qw.status == QuickWinStatus.TODO),
        completion_rate=round(completed / total * 100, 1) if total else 0.0,
        system_generated=sum(1 for qw in quick_wins if qw.source == QuickWinSource.SYSTEM),
        user_created=sum(1 for qw in quick_wins if qw.source == QuickWinSource.USER),
    )
