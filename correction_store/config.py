"""
Runtime configuration for the correction store.

Values come from the process environment, optionally seeded from a `.env`
file. Nothing is read at import time; call `StoreConfig.from_env()`.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Pattern, Union

from dotenv import load_dotenv


DEFAULT_PATH_FILTER = r"story/.*\.md"
DEFAULT_DICTIONARY_PATH = "dictionary.txt"


@dataclass
class StoreConfig:
    repo_dir: Path = Path("repo")
    remote_url: Optional[str] = None
    remote: str = "origin"
    branch: str = "main"
    path_filter: str = DEFAULT_PATH_FILTER
    dictionary_path: str = DEFAULT_DICTIONARY_PATH
    poll_delay_seconds: float = 30.0
    error_delay_seconds: float = 60.0
    network_timeout_seconds: Optional[float] = None
    author_name: str = "Review Bot"
    author_email: str = "noreply@review.bot"
    log_level: str = "INFO"
    models: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.repo_dir = Path(self.repo_dir)
        if self.poll_delay_seconds < 0 or self.error_delay_seconds < 0:
            raise ValueError("Delays must be non-negative.")
        re.compile(self.path_filter)

    @property
    def path_pattern(self) -> Pattern[str]:
        return re.compile(self.path_filter)

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[Union[str, Path]] = None,
    ) -> "StoreConfig":
        """
        Build a config from environment variables.

        When `env` is omitted, `.env` is loaded into `os.environ` first
        (existing variables win) and `os.environ` is used.
        """
        if env is None:
            load_dotenv(dotenv_path=dotenv_path)
            env = os.environ

        def _get(name: str, default: Any = None) -> Any:
            value = env.get(name)
            return value if value not in (None, "") else default

        def _float(name: str, default: Optional[float]) -> Optional[float]:
            raw = _get(name)
            if raw is None:
                return default
            try:
                return float(raw)
            except ValueError as exc:
                raise ValueError(f"{name} must be a number, got {raw!r}") from exc

        models = _get("MODEL")
        return cls(
            repo_dir=Path(_get("CORRECTION_REPO_DIR", "repo")),
            remote_url=_get("CORRECTION_REMOTE_URL"),
            remote=_get("CORRECTION_REMOTE", "origin"),
            branch=_get("CORRECTION_BRANCH", "main"),
            path_filter=_get("PATH_FILTER", DEFAULT_PATH_FILTER),
            dictionary_path=_get("DICTIONARY_PATH", DEFAULT_DICTIONARY_PATH),
            poll_delay_seconds=_float("POLL_DELAY_SECONDS", 30.0),
            error_delay_seconds=_float("ERROR_DELAY_SECONDS", 60.0),
            network_timeout_seconds=_float("NETWORK_TIMEOUT_SECONDS", None),
            author_name=_get("CORRECTION_AUTHOR_NAME", "Review Bot"),
            author_email=_get("CORRECTION_AUTHOR_EMAIL", "noreply@review.bot"),
            log_level=str(_get("LOG_LEVEL", "INFO")).upper(),
            models=[m for m in models.split("|") if m] if models else [],
        )
