"""Workflow pattern repositories.

Patterns are immutable once loaded. The engine only reads them.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

import yaml

from .contracts import WorkflowPattern
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class PatternRepository(Protocol):
    """Read-only source of workflow patterns."""

    async def get_pattern(self, pattern_id: str) -> WorkflowPattern:
        """Return the pattern for ``pattern_id``.

        Raises:
            KeyError: If no such pattern exists.
        """

    async def list_patterns(self) -> list[WorkflowPattern]:
        """Return every known pattern."""


class InMemoryPatternRepository(PatternRepository):
    """Patterns held in a dictionary keyed by id."""

    def __init__(self, patterns: Optional[Iterable[WorkflowPattern]] = None) -> None:
        self._patterns: Dict[str, WorkflowPattern] = {}
        for pattern in patterns or ():
            self.register(pattern)

    def register(self, pattern: WorkflowPattern) -> None:
        if pattern.id in self._patterns and self._patterns[pattern.id] != pattern:
            raise ConfigurationError(
                f"Pattern '{pattern.id}' is already registered with a different definition"
            )
        self._patterns[pattern.id] = pattern

    async def get_pattern(self, pattern_id: str) -> WorkflowPattern:
        try:
            return self._patterns[pattern_id]
        except KeyError:
            raise KeyError(f"Unknown workflow pattern: {pattern_id}") from None

    async def list_patterns(self) -> list[WorkflowPattern]:
        return list(self._patterns.values())


def load_pattern_file(path: str | Path) -> WorkflowPattern:
    """Parse a single YAML pattern definition."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return WorkflowPattern.model_validate(data)


class YamlPatternRepository(InMemoryPatternRepository):
    """Load every ``*.yaml``/``*.yml`` pattern in a directory once."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        super().__init__()
        if not self.directory.is_dir():
            logger.warning(f"Pattern directory {self.directory} does not exist")
            return

        files = sorted(self.directory.glob("*.yaml")) + sorted(
            self.directory.glob("*.yml")
        )
        for path in files:
            pattern = load_pattern_file(path)
            self.register(pattern)
            logger.debug(f"Loaded pattern {pattern.id} from {path}")
        logger.info(f"Loaded {len(self._patterns)} patterns from {self.directory}")
