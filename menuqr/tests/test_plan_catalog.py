"""
Tests for the plan catalog YAML loader.
"""

import pytest

from menuqr.config.plan_catalog import (
    PlanCatalogLoader,
    get_plan_catalog_loader,
    reset_plan_catalog_loader,
)
from menuqr.entitlements.features import Tier


@pytest.fixture(autouse=True)
def _reset_loader():
    reset_plan_catalog_loader()
    yield
    reset_plan_catalog_loader()


class TestPlanCatalogLoader:
    """Tests for PlanCatalogLoader."""

    def test_loads_plans_from_yaml(self, make_yaml_config):
        path = make_yaml_config("plans.yml", {
            "default_plan": "starter",
            "plans": [
                {"slug": "free", "name": "Free", "tier": "free"},
                {"slug": "starter", "name": "Starter", "tier": "starter", "limits": {"dishes": 60}},
            ],
        })

        loader = get_plan_catalog_loader(str(path))

        assert [p["slug"] for p in loader.get_plans()] == ["free", "starter"]
        assert loader.get_plan("starter")["limits"] == {"dishes": 60}
        assert loader.get_plan("enterprise") is None
        assert loader.default_plan_slug == "starter"

    def test_invalid_entries_skipped(self, make_yaml_config):
        path = make_yaml_config("plans.yml", {
            "plans": [
                {"slug": "gold", "name": "Gold", "tier": "gold"},
                {"slug": "nameless", "tier": "starter"},
                {"name": "Bistro", "tier": "professional"},
            ],
        })

        loader = PlanCatalogLoader(str(path))

        assert [p["slug"] for p in loader.get_plans()] == ["bistro"]

    def test_missing_file_falls_back_to_tiers(self, temp_config_dir):
        loader = PlanCatalogLoader(str(temp_config_dir / "missing.yml"))

        plans = loader.get_plans()

        assert [p["tier"] for p in plans] == [t.value for t in Tier]
        assert plans[0]["trial_days"] == 0
        assert plans[1]["trial_days"] == 14
        assert loader.default_plan_slug == "free"

    def test_singleton(self, make_yaml_config):
        path = make_yaml_config("plans.yml", {"plans": []})

        assert get_plan_catalog_loader(str(path)) is get_plan_catalog_loader()

    def test_get_plans_returns_copies(self, make_yaml_config):
        path = make_yaml_config("plans.yml", {"plans": [{"slug": "free", "name": "Free", "tier": "free"}]})
        loader = PlanCatalogLoader(str(path))

        loader.get_plans()[0]["name"] = "Changed"

        assert loader.get_plan("free")["name"] == "Free"

    def test_reload_picks_up_changes(self, make_yaml_config):
        path = make_yaml_config("plans.yml", {"plans": [{"slug": "free", "name": "Free", "tier": "free"}]})
        loader = PlanCatalogLoader(str(path))

        make_yaml_config("plans.yml", {"plans": [
            {"slug": "free", "name": "Free", "tier": "free"},
            {"slug": "starter", "name": "Starter", "tier": "starter"},
        ]})
        loader.reload()

        assert len(loader.get_plans()) == 2

    def test_shipped_catalog_seeds_every_tier(self):
        loader = PlanCatalogLoader()

        assert {p["tier"] for p in loader.get_plans()} == {t.value for t in Tier}
