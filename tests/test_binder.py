"""Tests for the Recommendation Binder."""

import pytest

from archetype_engine.binder import FALLBACK_QUICK_WINS, RecommendationBinder
from archetype_engine.catalog import load_catalog
from archetype_engine.schema import (
    ArchetypeMatch,
    Dimension,
    ImpactLevel,
    QuickWinSource,
    QuickWinStatus,
    QuickWinTemplate,
)


def make_match(name: str, dimension: Dimension = Dimension.EFFICIENCY, confidence: float = 0.6) -> ArchetypeMatch:
    return ArchetypeMatch(
        archetype_name=name,
        source_dimension=dimension,
        insight=f"{name} insight",
        confidence=confidence,
    )


TEMPLATES = [
    QuickWinTemplate(archetype_name="Escalation", title="Joint goals", description="d1", impact_level=ImpactLevel.HIGH),
    QuickWinTemplate(archetype_name="Shifting the Burden", title="Root cause", description="d2", impact_level=ImpactLevel.HIGH),
    QuickWinTemplate(archetype_name="Escalation", title="Blameless review", description="d3", impact_level=ImpactLevel.MEDIUM),
    QuickWinTemplate(archetype_name="Shifting the Burden", title="Fix register", description="d4", impact_level=ImpactLevel.LOW),
]


@pytest.fixture
def binder():
    return RecommendationBinder()


class TestBinding:
    """Tests for binding matches to templates."""

    def test_one_quick_win_per_template(self, binder):
        quick_wins = binder.bind([make_match("Escalation")], TEMPLATES, user_id="acme")
        assert [qw.title for qw in quick_wins] == ["Joint goals", "Blameless review"]
        assert [qw.impact_level for qw in quick_wins] == [ImpactLevel.HIGH, ImpactLevel.MEDIUM]

    def test_follows_match_order_then_template_order(self, binder):
        matches = [make_match("Shifting the Burden", confidence=0.8), make_match("Escalation", confidence=0.5)]
        quick_wins = binder.bind(matches, TEMPLATES, user_id="acme")
        assert [qw.title for qw in quick_wins] == ["Root cause", "Fix register", "Joint goals", "Blameless review"]

    def test_system_defaults(self, binder):
        quick_wins = binder.bind([make_match("Escalation")], TEMPLATES, user_id="acme")
        for qw in quick_wins:
            assert qw.user_id == "acme"
            assert qw.source == QuickWinSource.SYSTEM
            assert qw.status == QuickWinStatus.TODO
            assert qw.archetype == "Escalation"

    def test_dimension_comes_from_match(self, binder):
        matches = [
            make_match("Shifting the Burden", Dimension.EXCELLENCE),
            make_match("Escalation", Dimension.EFFECTIVENESS),
        ]
        quick_wins = binder.bind(matches, TEMPLATES, user_id="acme")
        by_archetype = {m.archetype_name: m.source_dimension for m in matches}
        for qw in quick_wins:
            assert qw.dimension == by_archetype[qw.archetype]

    def test_duplicate_templates_bound_once(self, binder):
        templates = TEMPLATES + [TEMPLATES[0]]
        quick_wins = binder.bind([make_match("Escalation")], templates, user_id="acme")
        assert [qw.title for qw in quick_wins] == ["Joint goals", "Blameless review"]

    def test_unrelated_templates_ignored(self, binder):
        quick_wins = binder.bind([make_match("Shifting the Burden")], TEMPLATES, user_id="acme")
        assert {qw.archetype for qw in quick_wins} == {"Shifting the Burden"}

    def test_bundled_catalog_has_templates_for_every_archetype(self, binder):
        catalog = load_catalog()
        for archetype in catalog.archetypes:
            quick_wins = binder.bind(
                [make_match(archetype.name)],
                catalog.templates_for([archetype.name]),
                user_id="acme",
            )
            assert quick_wins
            assert all(qw.archetype == archetype.name for qw in quick_wins)


class TestFallbackQuickWins:
    """Tests for the generic recommendations."""

    def test_no_templates_for_matches(self, binder):
        quick_wins = binder.bind([make_match("Drifting Goals")], TEMPLATES, user_id="acme")
        assert [qw.title for qw in quick_wins] == [title for title, _, _, _ in FALLBACK_QUICK_WINS]

    def test_no_matches(self, binder):
        quick_wins = binder.bind([], TEMPLATES, user_id="acme")
        assert len(quick_wins) == 2

    def test_fallback_is_dimension_balanced(self, binder):
        quick_wins = binder.bind([], [], user_id="acme")
        assert [qw.dimension for qw in quick_wins] == [Dimension.EFFICIENCY, Dimension.EXCELLENCE]
        for qw in quick_wins:
            assert qw.source == QuickWinSource.SYSTEM
            assert qw.archetype is None
            assert qw.status == QuickWinStatus.TODO
            assert qw.user_id == "acme"

    def test_fallback_ids_are_unique(self, binder):
        first = binder.fallback("acme")
        second = binder.fallback("acme")
        assert {qw.id for qw in first}.isdisjoint(qw.id for qw in second)
