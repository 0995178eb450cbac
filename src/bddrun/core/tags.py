from __future__ import annotations

from typing import Iterable, Sequence

from bddrun.core.models import TagLogic


def normalize_tag(name: str) -> str:
    """Trim, lower-case and `@`-prefix a tag name."""
    normalized = name.strip().lower()
    if not normalized:
        return ""
    if not normalized.startswith("@"):
        normalized = f"@{normalized}"
    return normalized


def normalize_tags(names: Iterable[str]) -> list[str]:
    """Normalize and de-duplicate, keeping first-seen order and dropping blanks."""
    seen: set[str] = set()
    out: list[str] = []
    for name in names:
        tag = normalize_tag(name)
        if not tag or tag in seen:
            continue
        seen.add(tag)
        out.append(tag)
    return out


def parse_tag_list(value: str | None) -> list[str]:
    """Split a comma- or whitespace-separated tag list as typed on a command line."""
    if not value:
        return []
    return [part for part in value.replace(",", " ").split() if part]


def build_expression(tags: Sequence[str], logic: TagLogic | str) -> str:
    """Join validated tags into a runner filter expression.

    `["@smoke", "@api"]` becomes `"@smoke and @api"` (AND) or `"@smoke or @api"` (OR).
    """
    if not tags:
        return ""
    joiner = " or " if TagLogic.parse(logic) is TagLogic.OR else " and "
    return joiner.join(tags)
