# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from .errors import RelayError
from .executor import BestEffortPolicy

DEFAULT_HOME = ".relayci"


@dataclass(frozen=True)
class Settings:
    """
    Engine configuration, read from RELAYCI_* environment variables.
    CLI options override individual fields with `with_overrides`.
    """
    home: Path = Path(DEFAULT_HOME)
    database_url: Optional[str] = None
    concurrency: Optional[int] = None
    artifact_retention_days: float = 7.0
    best_effort: BestEffortPolicy = BestEffortPolicy.SOFT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        try:
            concurrency = int(env["RELAYCI_CONCURRENCY"]) if env.get("RELAYCI_CONCURRENCY") else None
            retention = float(env.get("RELAYCI_ARTIFACT_RETENTION_DAYS", "7"))
            best_effort = BestEffortPolicy(env.get("RELAYCI_BEST_EFFORT", "soft").lower())
        except ValueError as e:
            raise RelayError(f"Invalid relayci setting: {e}") from e
        return cls(
            home=Path(env.get("RELAYCI_HOME", DEFAULT_HOME)),
            database_url=env.get("RELAYCI_DATABASE_URL") or None,
            concurrency=concurrency,
            artifact_retention_days=retention,
            best_effort=best_effort,
        )

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def artifact_dir(self) -> Path:
        return self.home / "artifacts"

    @property
    def work_dir(self) -> Path:
        return self.home / "work"

    @property
    def db_url(self) -> str:
        return self.database_url or f"sqlite:///{(self.home / 'runs.db').resolve()}"

    @property
    def retention_seconds(self) -> float:
        return self.artifact_retention_days * 86400
