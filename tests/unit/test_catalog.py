from __future__ import annotations

from pathlib import Path

from bddrun.core.catalog import CatalogTagValidator, FileFeatureCatalog, extract_tags
from bddrun.core.models import TagLogic
from tests.conftest import write_features


def _catalog(tmp_path: Path) -> FileFeatureCatalog:
    return FileFeatureCatalog(write_features(tmp_path / "features"))


def test_extract_tags_reads_every_tag_line() -> None:
    text = "@Smoke @ui # owner: web\nFeature: x\n\n  @slow\n  Scenario: y\n    Given an email like a@b.c\n"
    assert extract_tags(text) == ["@smoke", "@ui", "@slow"]


def test_list_features_is_sorted_and_relative(tmp_path: Path) -> None:
    assert _catalog(tmp_path).list_features() == [
        "admin/reports.feature",
        "checkout.feature",
        "legacy.feature",
        "login.feature",
    ]


def test_missing_dir_is_an_empty_catalog(tmp_path: Path) -> None:
    catalog = FileFeatureCatalog(tmp_path / "absent")
    assert catalog.list_features() == []
    assert catalog.all_tags() == set()


def test_has_feature_stays_inside_the_catalog(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    (tmp_path / "outside.feature").write_text("Feature: outside\n", encoding="utf-8")
    assert catalog.has_feature("login.feature")
    assert catalog.has_feature("admin/reports.feature")
    assert not catalog.has_feature("missing.feature")
    assert not catalog.has_feature("../outside.feature")


def test_match_and_or(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    assert catalog.match(["@smoke"], TagLogic.AND) == ["checkout.feature", "login.feature"]
    assert catalog.match(["@smoke", "@api"], TagLogic.AND) == ["checkout.feature"]
    assert catalog.match(["@api", "@regression"], TagLogic.OR) == [
        "admin/reports.feature",
        "checkout.feature",
        "legacy.feature",
    ]
    assert catalog.match(["@nothing"], TagLogic.OR) == []
    assert catalog.match([], TagLogic.AND) == []


def test_scenario_tags_count_for_matching(tmp_path: Path) -> None:
    assert _catalog(tmp_path).match(["@payments"], TagLogic.AND) == ["checkout.feature"]


def test_validator_keeps_known_active_tags(tmp_path: Path) -> None:
    validator = CatalogTagValidator(_catalog(tmp_path), inactive=["legacy"])
    assert validator.validate(["Smoke", "@API", "@legacy", "@unknown", "@smoke"]) == ["@smoke", "@api"]
    assert validator.validate(["@unknown"]) == []
