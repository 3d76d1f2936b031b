"""Archetype Detection and Recommendation Engine.

Diagnoses systems archetypes from health-check questionnaire responses and
proposes quick wins for the archetypes it finds.
"""

from .binder import RecommendationBinder
from .catalog import InvalidCatalogError, get_catalog, load_catalog
from .engine import DetectionEngine, NoResponsesError
from .matcher import ArchetypeMatcher
from .store import DetectionStore, InMemoryStore, JsonFileStore, StorageError

__version__ = "1.0.0"

__all__ = [
    "ArchetypeMatcher",
    "DetectionEngine",
    "DetectionStore",
    "InMemoryStore",
    "InvalidCatalogError",
    "JsonFileStore",
    "NoResponsesError",
    "RecommendationBinder",
    "StorageError",
    "get_catalog",
    "load_catalog",
]
