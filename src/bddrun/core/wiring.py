from __future__ import annotations

from pathlib import Path

from bddrun.core import config as config_core
from bddrun.core.catalog import CatalogTagValidator, FileFeatureCatalog
from bddrun.core.history import HistoryStore
from bddrun.core.invocation import RunnerSettings, load_runner_settings
from bddrun.core.orchestrator import ExecutionOrchestrator
from bddrun.core.tags import parse_tag_list


def inactive_tags() -> list[str]:
    value = config_core.get_config_value("tags", "inactive", default=[])
    if isinstance(value, str):
        return parse_tag_list(value)
    if not isinstance(value, list):
        raise ValueError("Invalid config value: [tags] inactive must be a list of tag names")
    return [str(tag) for tag in value]


def build_orchestrator(
    settings: RunnerSettings | None = None,
    *,
    db_path: Path | None = None,
) -> ExecutionOrchestrator:
    """Assemble an orchestrator over the file catalog and the SQLite history."""
    settings = settings or load_runner_settings()
    catalog = FileFeatureCatalog(settings.features_dir)
    return ExecutionOrchestrator(
        settings=settings,
        catalog=catalog,
        tag_validator=CatalogTagValidator(catalog, inactive=inactive_tags()),
        history=HistoryStore(db_path),
    )
