"""Read-only views over the feature files the runner executes.

The orchestrator only needs two questions answered: which features match a tag
selection, and which of the requested tags are known and active. Editing feature
files or the tag registry is someone else's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from bddrun.core.logging import get_logger
from bddrun.core.models import TagLogic
from bddrun.core.tags import normalize_tag, normalize_tags

logger = get_logger(__name__)

FEATURE_SUFFIX = ".feature"


@dataclass(frozen=True)
class FeatureEntry:
    name: str
    path: Path
    tags: tuple[str, ...]


class FeatureCatalog(Protocol):
    def list_features(self) -> list[str]: ...

    def has_feature(self, name: str) -> bool: ...

    def match(self, tags: Sequence[str], logic: TagLogic) -> list[str]: ...

    def all_tags(self) -> set[str]: ...


class TagValidator(Protocol):
    def validate(self, tags: Iterable[str]) -> list[str]: ...


def extract_tags(text: str) -> list[str]:
    """Collect every `@tag` from tag lines (feature, rule and scenario level)."""
    found: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped.startswith("@"):
            continue
        # Trailing comments on tag lines are allowed by Gherkin.
        stripped = stripped.split(" #", 1)[0]
        for token in stripped.split():
            if token.startswith("@") and len(token) > 1:
                found.append(token)
    return normalize_tags(found)


class FileFeatureCatalog:
    def __init__(self, features_dir: Path) -> None:
        self.features_dir = Path(features_dir)

    def entries(self) -> list[FeatureEntry]:
        if not self.features_dir.is_dir():
            return []
        entries: list[FeatureEntry] = []
        for path in sorted(self.features_dir.rglob(f"*{FEATURE_SUFFIX}")):
            if not path.is_file():
                continue
            name = path.relative_to(self.features_dir).as_posix()
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("feature_unreadable", feature=name, error=str(exc))
                continue
            entries.append(FeatureEntry(name=name, path=path, tags=tuple(extract_tags(text))))
        return entries

    def list_features(self) -> list[str]:
        return [entry.name for entry in self.entries()]

    def has_feature(self, name: str) -> bool:
        candidate = (self.features_dir / name).resolve()
        root = self.features_dir.resolve()
        if not candidate.is_relative_to(root):
            return False
        return candidate.is_file() and candidate.name.endswith(FEATURE_SUFFIX)

    def match(self, tags: Sequence[str], logic: TagLogic) -> list[str]:
        wanted = [normalize_tag(tag) for tag in tags]
        if not wanted:
            return []
        matches: list[str] = []
        for entry in self.entries():
            present = set(entry.tags)
            if logic is TagLogic.OR:
                selected = any(tag in present for tag in wanted)
            else:
                selected = all(tag in present for tag in wanted)
            if selected:
                matches.append(entry.name)
        return matches

    def all_tags(self) -> set[str]:
        tags: set[str] = set()
        for entry in self.entries():
            tags.update(entry.tags)
        return tags


class CatalogTagValidator:
    """Known tags are the ones used by some feature; `inactive` tags are refused."""

    def __init__(self, catalog: FeatureCatalog, *, inactive: Iterable[str] = ()) -> None:
        self.catalog = catalog
        self.inactive = set(normalize_tags(inactive))

    def validate(self, tags: Iterable[str]) -> list[str]:
        available = self.catalog.all_tags() - self.inactive
        valid: list[str] = []
        for tag in normalize_tags(tags):
            if tag in available:
                valid.append(tag)
            else:
                logger.warning("tag_unknown_or_inactive", tag=tag)
        return valid
