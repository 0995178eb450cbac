from __future__ import annotations

import re

import ulid

EXECUTION_PREFIX = "exec_"

# Caller-supplied ids only need to be safe to embed in report file names and URLs.
EXECUTION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def execution_id() -> str:
    # ULIDs sort by creation time at millisecond resolution.
    return f"{EXECUTION_PREFIX}{ulid.new()}"


def is_execution_id(value: str) -> bool:
    return bool(EXECUTION_ID_RE.fullmatch(value))
