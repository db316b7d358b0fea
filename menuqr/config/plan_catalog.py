"""
Plan catalog configuration loader.

Loads the plans seeded on first start from config/plans.yml (or
PLAN_CATALOG_PATH). The file only seeds: once a plan row exists the
database owns it, so editing the YAML never rewrites a live plan.

Consumers:
  - menuqr.main lifespan: ensure_default_plans(db, loader.get_plans())

Usage:
    from menuqr.config.plan_catalog import get_plan_catalog_loader

    loader = get_plan_catalog_loader()
    plans = loader.get_plans()
    starter = loader.get_plan("starter")
"""

import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml

from menuqr.entitlements.features import Tier, parse_tier

logger = logging.getLogger(__name__)

_DEFAULT_PLAN_SLUG = "free"


class PlanCatalogLoader:
    """
    Thread-safe singleton loader for config/plans.yml.

    Falls back to one plan per tier (tier defaults only) when the file is
    missing.
    """

    _instance: Optional["PlanCatalogLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("PLAN_CATALOG_PATH")
        self._raw: Dict[str, Any] = {}
        self._plans: List[Dict[str, Any]] = []
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent / "config" / "plans.yml",
            Path(os.getcwd()) / "config" / "plans.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"plans.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading plan catalog from %s", path)

                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}

                self._plans = self._validated(self._raw.get("plans") or [])
                logger.info("Loaded plan catalog: plans=%s", [p["slug"] for p in self._plans])
            except FileNotFoundError:
                logger.warning("plans.yml not found, using tier defaults")
                self._raw = {}
                self._plans = self._tier_defaults()

    @staticmethod
    def _tier_defaults() -> List[Dict[str, Any]]:
        return [
            {
                "slug": tier.value,
                "name": tier.value.capitalize(),
                "tier": tier.value,
                "trial_days": 0 if tier == Tier.FREE else 14,
                "sort_order": index,
            }
            for index, tier in enumerate(Tier)
        ]

    @staticmethod
    def _validated(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Drop entries without a name or with an unknown tier."""
        plans = []
        for entry in entries:
            if not entry.get("name") or parse_tier(entry.get("tier")) is None:
                logger.error("Skipping invalid plan catalog entry", extra={"entry": entry})
                continue
            plan = dict(entry)
            plan.setdefault("slug", entry["name"].lower())
            plans.append(plan)
        return plans

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def get_plans(self) -> List[Dict[str, Any]]:
        return [dict(p) for p in self._plans]

    def get_plan(self, slug: str) -> Optional[Dict[str, Any]]:
        for plan in self._plans:
            if plan["slug"] == slug:
                return dict(plan)
        return None

    @property
    def default_plan_slug(self) -> str:
        """Plan new tenants are put on."""
        return self._raw.get("default_plan", _DEFAULT_PLAN_SLUG)


def get_plan_catalog_loader(config_path: Optional[str] = None) -> PlanCatalogLoader:
    """Return the singleton PlanCatalogLoader."""
    return PlanCatalogLoader(config_path)


def reset_plan_catalog_loader() -> None:
    """Reset singleton (for tests only)."""
    PlanCatalogLoader._instance = None
