"""Centralized configuration management for the archetype engine."""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

CONFIG_ENV_VAR = "ARCHETYPE_ENGINE_CONFIG"


class CatalogConfig(BaseModel):
    """Where the archetype catalog comes from."""
    path: Optional[str] = Field(
        None,
        description="YAML or JSON catalog file (default: the bundled catalog)"
    )


class StorageConfig(BaseModel):
    """Where detection state is kept by the CLI."""
    path: str = Field(
        "archetype-store.json",
        description="JSON file holding responses, detected archetypes and quick wins"
    )


class ScoreBandsConfig(BaseModel):
    """Colour bands for average dimension scores.

    An average at or above ``green_threshold`` is Green, at or above
    ``yellow_threshold`` is Yellow, anything lower is Red.
    """
    green_threshold: float = Field(4.0, description="Minimum average score for Green (1-5)")
    yellow_threshold: float = Field(3.0, description="Minimum average score for Yellow (1-5)")


class LoggingConfig(BaseModel):
    """Logging output."""
    level: str = Field("WARNING", description="DEBUG, INFO, WARNING or ERROR")
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="logging.Formatter format string"
    )

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level '{value}'")
        return value


class EngineConfig(BaseModel):
    """Complete configuration for the archetype engine."""
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    score_bands: ScoreBandsConfig = Field(default_factory=ScoreBandsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# Global config instance
_config: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """Get the current configuration.

    Returns the global config, initializing with defaults if not yet loaded.
    """
    global _config
    if _config is None:
        _config = EngineConfig()
    return _config


def load_config(path: Path) -> EngineConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        The loaded EngineConfig.
    """
    global _config

    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    _config = EngineConfig.model_validate(data or {})
    return _config


def reset_config() -> None:
    """Reset configuration to defaults."""
    global _config
    _config = EngineConfig()


def find_config_file() -> Optional[Path]:
    """Find an engine configuration file.

    Looks in (order of priority):
    1. ARCHETYPE_ENGINE_CONFIG environment variable
    2. ./archetype-engine.yaml
    3. ./archetype-engine.yml
    4. ~/.config/archetype-engine/config.yaml
    """
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        path = Path(env_path)
        if path.exists():
            return path

    for name in ["archetype-engine.yaml", "archetype-engine.yml"]:
        path = Path(name)
        if path.exists():
            return path

    user_config = Path.home() / ".config" / "archetype-engine" / "config.yaml"
    if user_config.exists():
        return user_config

    return None


def save_default_config(path: Path) -> None:
    """Save the default configuration to a YAML file.

    Args:
        path: Path where to save the configuration.
    """
    data = EngineConfig().model_dump()

    yaml_content = """# Archetype Engine Configuration
# ==============================
#
# Configures the catalog source, the state file used by the CLI,
# dimension score colour bands and logging.
#
# The matching weights (0.7 diagnostic / 0.3 symptom) and the 0.3
# acceptance threshold are fixed and cannot be changed here.
#
# Copy this file to one of these locations:
#   - ./archetype-engine.yaml (current directory)
#   - ~/.config/archetype-engine/config.yaml (user config)
#
# Or set the ARCHETYPE_ENGINE_CONFIG environment variable.

"""
    yaml_content += yaml.dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(yaml_content)


def setup_logging(cfg: Optional[LoggingConfig] = None, level: Optional[str] = None) -> logging.Logger:
    """Attach a stream handler to the package logger.

    Calling it again replaces the handler instead of adding another one.
    """
    cfg = cfg or get_config().logging
    logger = logging.getLogger("archetype_engine")
    logger.setLevel((level or cfg.level).upper())

    for handler in list(logger.handlers):
        if getattr(handler, "_archetype_engine", False):
            logger.removeHandler(handler)

    ch = logging.StreamHandler()
    ch.setFormatter(logging.Formatter(cfg.format))
    ch._archetype_engine = True
    logger.addHandler(ch)
    return logger
