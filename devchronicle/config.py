"""Configuration loading for devchronicle.

Config sources (in priority order):
1. Explicit arguments passed to functions
2. Environment variables (DEVCHRONICLE_DB_PATH, etc.)
3. .env file in current directory
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DB_PATH = Path("devchronicle.db")
DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_MAX_BULLETS = 6
ACTIVITY_LOG_NAME = "devchronicle-activity.jsonl"


@dataclass
class Config:
    anthropic_api_key: str = ""
    db_path: Path = DEFAULT_DB_PATH
    model: str = DEFAULT_MODEL
    max_bullets: int = DEFAULT_MAX_BULLETS
    log_path: Path | None = None  # None = next to the database
    _issues: list[str] = field(default_factory=list, repr=False)

    @classmethod
    def load(cls) -> Config:
        issues: list[str] = []
        raw_bullets = os.getenv("DEVCHRONICLE_MAX_BULLETS", str(DEFAULT_MAX_BULLETS))
        try:
            max_bullets = int(raw_bullets)
        except ValueError:
            issues.append(f"DEVCHRONICLE_MAX_BULLETS is not an integer: {raw_bullets!r}")
            max_bullets = DEFAULT_MAX_BULLETS

        log_path = os.getenv("DEVCHRONICLE_LOG_PATH")
        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            db_path=Path(os.getenv("DEVCHRONICLE_DB_PATH", str(DEFAULT_DB_PATH))),
            model=os.getenv("DEVCHRONICLE_MODEL", DEFAULT_MODEL) or DEFAULT_MODEL,
            max_bullets=max_bullets,
            log_path=Path(log_path) if log_path else None,
            _issues=issues,
        )

    @property
    def activity_log_path(self) -> Path:
        if self.log_path is not None:
            return self.log_path
        return self.db_path.parent / ACTIVITY_LOG_NAME

    def validate(self) -> list[str]:
        """Return a list of config issues."""
        issues = list(self._issues)
        if self.max_bullets < 1:
            issues.append("Max bullets per day must be at least 1 (DEVCHRONICLE_MAX_BULLETS)")
        if not self.model:
            issues.append("Model name not set (DEVCHRONICLE_MODEL)")
        return issues
