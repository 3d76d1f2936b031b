"""Binder - recommendation phase of the engine.

Turns matched archetypes into system quick wins using the catalog's
templates.
"""

import logging
from typing import Sequence

from .schema import (
    ArchetypeMatch,
    Dimension,
    ImpactLevel,
    QuickWin,
    QuickWinSource,
    QuickWinStatus,
    QuickWinTemplate,
)

logger = logging.getLogger(__name__)


# Generic recommendations used when nothing could be bound, so a completed
# assessment always yields something actionable.
FALLBACK_QUICK_WINS = (
    (
        "Start a Weekly Team Huddle",
        "Hold a 15-minute meeting every Monday to align on priorities and blockers.",
        Dimension.EFFICIENCY,
        ImpactLevel.HIGH,
    ),
    (
        "Hold a Monthly Lessons-Learned Review",
        "Spend 30 minutes at the end of each month on what worked, what did not, "
        "and one practice to change next month.",
        Dimension.EXCELLENCE,
        ImpactLevel.MEDIUM,
    ),
)


class RecommendationBinder:
    """Binds archetype matches to quick-win templates.

    A template carries no dimension of its own: every quick win takes the
    dimension of the match that selected it.
    """

    def bind(
        self,
        matches: Sequence[ArchetypeMatch],
        templates: Sequence[QuickWinTemplate],
        user_id: str,
    ) -> list[QuickWin]:
        """Build the system quick wins for a set of matches.

        Args:
            matches: Archetype matches, highest confidence first
            templates: Candidate templates, in catalog order
            user_id: Owner of the generated quick wins

        Returns:
            One quick win per (match, template) pair, or the fallback set
            when no template applies.
        """
        quick_wins = []
        seen: set[tuple[str, str]] = set()

        for match in matches:
            for template in templates:
                if template.archetype_name != match.archetype_name:
                    continue
                key = (match.archetype_name, template.title)
                if key in seen:
                    logger.debug("Skipping duplicate quick win '%s' for %s", template.title, match.archetype_name)
                    continue
                seen.add(key)
                quick_wins.append(self._from_template(template, match, user_id))

        if not quick_wins:
            logger.info(
                "No quick win templates for %d matched archetype(s); using fallback recommendations",
                len(matches),
            )
            return self.fallback(user_id)

        return quick_wins

    def fallback(self, user_id: str) -> list[QuickWin]:
        """The generic quick wins."""
        return [
            QuickWin(
                user_id=user_id,
                title=title,
                description=description,
                source=QuickWinSource.SYSTEM,
                archetype=None,
                dimension=dimension,
                impact_level=impact,
                status=QuickWinStatus.TODO,
            )
            for title, description, dimension, impact in FALLBACK_QUICK_WINS
        ]

    def _from_template(
        self,
        template: QuickWinTemplate,
        match: ArchetypeMatch,
        user_id: str,
    ) -> QuickWin:
        return QuickWin(
            user_id=user_id,
            title=template.title,
            description=template.description,
            source=QuickWinSource.SYSTEM,
            archetype=match.archetype_name,
            dimension=match.source_dimension,
            impact_level=template.impact_level,
            status=QuickWinStatus.TODO,
        )
