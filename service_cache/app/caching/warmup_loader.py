"""
Loader for an optional warmup route override file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import json

from shared.logging import get_logger
from .policy import WarmupRoute


class WarmupRouteLoader:
    """
    Reads warmup routes from a JSON file of the form::

        {"routes": [{"route": "/api/tariffs", "params": {"limit": 50}, "priority": 1}]}

    A missing or malformed file yields None so the caller keeps the built-in list.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self._path = Path(config_path) if config_path else None
        self.logger = get_logger("cache.warmup_loader")

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def load(self) -> Optional[List[WarmupRoute]]:
        if self._path is None:
            return None

        if not self._path.exists():
            self.logger.warning("Warmup routes file not found; using defaults", path=str(self._path))
            return None

        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (ValueError, OSError) as exc:
            self.logger.error("Failed to read warmup routes file", path=str(self._path), error=str(exc))
            return None

        routes: List[WarmupRoute] = []
        for entry in payload.get("routes", []) if isinstance(payload, dict) else []:
            route = self._parse_entry(entry)
            if route is not None:
                routes.append(route)

        self.logger.info("Loaded warmup routes", path=str(self._path), count=len(routes))
        return routes

    def _parse_entry(self, entry: Dict[str, Any]) -> Optional[WarmupRoute]:
        if not isinstance(entry, dict) or not entry.get("route"):
            self.logger.warning("Skipping malformed warmup entry", entry=entry)
            return None

        params = entry.get("params")
        if not isinstance(params, dict):
            params = {}
        try:
            priority = int(entry.get("priority", 100))
        except (TypeError, ValueError):
            priority = 100

        return WarmupRoute(
            route=str(entry["route"]),
            params={str(name): str(value) for name, value in params.items()},
            priority=priority,
        )
