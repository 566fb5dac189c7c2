"""Target catalog loaded from the JSON server configuration."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)


class Target(BaseModel):
    """One provisionable service endpoint with its pricing and capacity."""

    code: str
    name: Optional[str] = None
    host: str = ""
    enabled: bool = True
    capacity: int = Field(default=0, ge=0)  # 0 = unlimited
    prices: Dict[str, int] = Field(default_factory=dict)
    quota_gb: int = 0
    ip_limit: int = 1

    def price_for(self, days: int) -> int:
        return int(self.prices.get(str(int(days)), 0) or 0)

    def has_capacity_for(self, active_count: int) -> bool:
        return self.capacity <= 0 or active_count < self.capacity


class TargetCatalog:
    """Enabled targets indexed by code."""

    def __init__(self, targets: Iterable[Target]) -> None:
        self._targets: Dict[str, Target] = {}
        for target in targets:
            if target.enabled:
                self._targets[target.code] = target

    def get(self, code: str) -> Optional[Target]:
        return self._targets.get(str(code or "").strip())

    def list(self) -> List[Target]:
        return list(self._targets.values())


class FileTargetCatalog(TargetCatalog):
    """Catalog that re-reads its JSON file whenever the file changes on disk."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._mtime: Optional[float] = None
        super().__init__([])

    def _reload_if_changed(self) -> None:
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            if self._mtime is not None:
                logger.warning("Targets config %s disappeared; catalog is now empty", self.path)
            self._targets = {}
            self._mtime = None
            return
        if mtime == self._mtime:
            return
        self._targets = {target.code: target for target in load_targets(self.path) if target.enabled}
        self._mtime = mtime

    def get(self, code: str) -> Optional[Target]:
        self._reload_if_changed()
        return super().get(code)

    def list(self) -> List[Target]:
        self._reload_if_changed()
        return super().list()


def load_targets(path: Path) -> List[Target]:
    """Parse the targets file, skipping malformed entries."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Targets config %s is invalid: %s", path, exc)
        return []
    if not isinstance(raw, list):
        logger.error("Targets config %s must be a JSON list", path)
        return []

    targets: List[Target] = []
    for row in raw:
        if not isinstance(row, dict):
            continue
        try:
            targets.append(Target.model_validate(row))
        except PydanticValidationError as exc:
            logger.warning("Skipping invalid target entry %r: %s", row.get("code"), exc)
    return targets
