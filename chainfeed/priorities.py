"""
Field priority table - which provider is trusted first for each field, and
how long an answer involving that field may be cached.
"""

from pathlib import Path

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator

DEFAULT_PRIORITIES_PATH = Path(__file__).with_name("field_priorities.yaml")


class FieldPriorityConfig(BaseModel):
    """Priority table as stored in YAML."""

    version: str = "1.0"
    field_priorities: dict[str, list[str]] = Field(default_factory=dict)
    field_ttl: dict[str, float] = Field(default_factory=dict)  # seconds

    @field_validator("field_priorities")
    @classmethod
    def _dedupe_providers(cls, value: dict[str, list[str]]) -> dict[str, list[str]]:
        return {field: list(dict.fromkeys(names)) for field, names in value.items()}

    @field_validator("field_ttl")
    @classmethod
    def _non_negative(cls, value: dict[str, float]) -> dict[str, float]:
        for field, ttl in value.items():
            if ttl < 0:
                raise ValueError(f"TTL for {field} must be >= 0, got {ttl}")
        return value

    def ttl_for(self, fields: list[str], default: float) -> float:
        """Shortest configured TTL among ``fields``; ``default`` if none is configured."""
        ttls = [self.field_ttl[f] for f in fields if f in self.field_ttl]
        return min(ttls) if ttls else default


def load_field_priorities(path: str | Path | None = None) -> FieldPriorityConfig:
    """
    Load the priority table from YAML.

    A missing file yields an empty table. A malformed file raises, since
    silently routing with no priorities would change which provider wins.
    """
    config_path = Path(path) if path else DEFAULT_PRIORITIES_PATH
    if not config_path.exists():
        logger.warning(f"Field priority config not found: {config_path}, using defaults")
        return FieldPriorityConfig()

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    config = FieldPriorityConfig(**data)
    logger.info(
        f"Loaded field priorities from {config_path}: "
        f"{len(config.field_priorities)} fields, {len(config.field_ttl)} TTLs"
    )
    return config
