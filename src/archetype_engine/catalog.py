"""Archetype catalog loading and validation.

The catalog is a hand-authored table (YAML or JSON) of archetype
definitions and quick-win templates. It is validated completely when
loaded: a catalog with any structural problem is rejected as a whole,
never partially used.
"""

import json
import logging
from importlib import resources
from pathlib import Path
from typing import Optional, Sequence, Union

import yaml
from pydantic import ValidationError

from .schema import ArchetypeCatalog, ArchetypeDefinition, QuickWinTemplate

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_RESOURCE = "archetypes.yaml"


class InvalidCatalogError(Exception):
    """Raised when the archetype catalog is malformed.

    This is a configuration error: it must surface at load time, before
    any detection run.
    """

    def __init__(self, issues: list[str], source: Optional[str] = None):
        self.issues = list(issues)
        self.source = source
        where = f" ({source})" if source else ""
        detail = "; ".join(self.issues)
        super().__init__(f"Invalid archetype catalog{where}: {detail}")


class CatalogValidator:
    """Validates catalog entries and reports issues."""

    def validate(self, catalog: ArchetypeCatalog) -> list[str]:
        """Validate the catalog and return a list of issues."""
        issues = self.validate_archetypes(catalog.archetypes)
        issues.extend(self.validate_templates(catalog.quick_win_templates, catalog.names))
        return issues

    def validate_archetypes(self, archetypes: Sequence[ArchetypeDefinition]) -> list[str]:
        """Validate archetype definitions on their own."""
        issues = []

        names = [a.name for a in archetypes]
        duplicates = sorted(set(n for n in names if names.count(n) > 1))
        if duplicates:
            issues.append(f"Duplicate archetype names: {', '.join(duplicates)}")

        for archetype in archetypes:
            issues.extend(self._validate_archetype(archetype))

        return issues

    def validate_templates(
        self,
        templates: Sequence[QuickWinTemplate],
        archetype_names: Sequence[str],
    ) -> list[str]:
        """Check every template points at a known archetype."""
        issues = []
        known = set(archetype_names)
        for template in templates:
            if template.archetype_name not in known:
                issues.append(
                    f"Quick win template '{template.title}' references unknown "
                    f"archetype '{template.archetype_name}'"
                )
            if not template.title.strip():
                issues.append(f"[{template.archetype_name}] Quick win template missing title")
        return issues

    def _validate_archetype(self, archetype: ArchetypeDefinition) -> list[str]:
        """Validate a single archetype definition."""
        issues = []
        prefix = f"[{archetype.name or '<unnamed>'}]"

        if not archetype.name.strip():
            issues.append(f"{prefix} Missing name")

        if not archetype.diagnostic_question_ids:
            issues.append(f"{prefix} Empty diagnostic question list")
        else:
            ids = archetype.diagnostic_question_ids
            repeated = sorted(set(q for q in ids if ids.count(q) > 1))
            if repeated:
                issues.append(f"{prefix} Repeated diagnostic question ids: {repeated}")
            invalid = [q for q in ids if q < 1]
            if invalid:
                issues.append(f"{prefix} Diagnostic question ids must be positive: {invalid}")

        return issues


def ensure_valid_archetypes(archetypes: Sequence[ArchetypeDefinition]) -> None:
    """Raise InvalidCatalogError if any archetype definition is unusable."""
    issues = CatalogValidator().validate_archetypes(archetypes)
    if issues:
        raise InvalidCatalogError(issues)


def build_catalog(
    archetypes: Sequence[ArchetypeDefinition],
    templates: Sequence[QuickWinTemplate] = (),
    version: str = "1.0.0",
) -> ArchetypeCatalog:
    """Assemble and validate a catalog from already-parsed entries."""
    catalog = ArchetypeCatalog(
        version=version,
        archetypes=list(archetypes),
        quick_win_templates=list(templates),
    )
    issues = CatalogValidator().validate(catalog)
    if issues:
        raise InvalidCatalogError(issues)
    return catalog


def _read_catalog_data(path: Path) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            return json.load(f)
        return yaml.safe_load(f)


def parse_catalog(data: dict, source: Optional[str] = None) -> ArchetypeCatalog:
    """Validate raw catalog data and return the catalog."""
    if not isinstance(data, dict):
        raise InvalidCatalogError(["Catalog must be a mapping with an 'archetypes' list"], source)

    try:
        catalog = ArchetypeCatalog.model_validate(data)
    except ValidationError as e:
        issues = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise InvalidCatalogError(issues, source) from e

    issues = CatalogValidator().validate(catalog)
    if issues:
        raise InvalidCatalogError(issues, source)
    return catalog


def load_catalog(path: Optional[Union[str, Path]] = None) -> ArchetypeCatalog:
    """Load and validate an archetype catalog.

    Args:
        path: YAML or JSON catalog file. Defaults to the bundled catalog.

    Returns:
        The validated catalog.

    Raises:
        InvalidCatalogError: If the file cannot be read or fails validation.
    """
    if path is None:
        source = f"bundled {DEFAULT_CATALOG_RESOURCE}"
        try:
            resource = resources.files("archetype_engine") / "data" / DEFAULT_CATALOG_RESOURCE
            text = resource.read_text(encoding="utf-8")
            data = yaml.safe_load(text)
        except (OSError, yaml.YAMLError) as e:
            raise InvalidCatalogError([f"Cannot read bundled catalog: {e}"], source) from e
    else:
        path = Path(path)
        source = str(path)
        if not path.exists():
            raise InvalidCatalogError([f"Catalog file not found: {path}"], source)
        try:
            data = _read_catalog_data(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise InvalidCatalogError([f"Cannot parse catalog file: {e}"], source) from e

    catalog = parse_catalog(data, source)
    logger.info(
        "Loaded archetype catalog %s: %d archetypes, %d quick win templates",
        source, len(catalog.archetypes), len(catalog.quick_win_templates),
    )
    return catalog


def validate_catalog(path: Optional[Union[str, Path]] = None) -> tuple[bool, list[str]]:
    """Validate a catalog file without raising.

    Returns:
        Tuple of (is_valid, issues).
    """
    try:
        load_catalog(path)
    except InvalidCatalogError as e:
        return False, e.issues
    return True, []


def save_catalog(catalog: ArchetypeCatalog, output_path: Union[str, Path]) -> None:
    """Write a catalog as YAML, or JSON when the path ends in .json."""
    output_path = Path(output_path)
    data = catalog.model_dump(mode="json")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        if output_path.suffix.lower() == ".json":
            json.dump(data, f, indent=2, ensure_ascii=False)
        else:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)


# Catalog loaded once per process
_catalog: Optional[ArchetypeCatalog] = None
_catalog_path: Optional[Path] = None


def get_catalog(path: Optional[Union[str, Path]] = None) -> ArchetypeCatalog:
    """Return the process-wide catalog, loading it on first use.

    A different ``path`` than the one already loaded triggers a reload.
    """
    global _catalog, _catalog_path
    resolved = Path(path) if path is not None else None
    if _catalog is None or resolved != _catalog_path:
        _catalog = load_catalog(resolved)
        _catalog_path = resolved
    return _catalog


def reset_catalog() -> None:
    """Forget the cached catalog."""
    global _catalog, _catalog_path
    _catalog = None
    _catalog_path = None
