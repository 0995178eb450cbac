from __future__ import annotations

import pytest

from bddrun.core import envelope
from bddrun.core.error_types import KNOWN_ERROR_TYPES, DuplicateExecutionError, ValidationError
from bddrun.core.process import LaunchError, RunFailure


def test_envelope_err_rejects_unknown_error_type() -> None:
    with pytest.raises(ValueError, match="Unknown error type"):
        envelope.err(command="run.all", error_type="BOGUS", message="nope", details={})


@pytest.mark.parametrize(
    "exc",
    [
        ValidationError("bad tags", details={"tags": []}),
        DuplicateExecutionError("exec_1"),
        LaunchError("mvn", "not found on PATH"),
        RunFailure(["mvn", "test"], 1, "boom"),
    ],
)
def test_typed_errors_carry_known_envelope_types(exc: Exception) -> None:
    assert exc.error_type in KNOWN_ERROR_TYPES


def test_validation_error_is_a_value_error() -> None:
    exc = ValidationError("No valid tags found: ['@nope']", details={"tags": ["@nope"]})
    assert isinstance(exc, ValueError)
    assert exc.details == {"tags": ["@nope"]}
    assert ValidationError("plain").details == {}


def test_launch_error_message() -> None:
    exc = LaunchError("mvn", "not found on PATH")
    assert str(exc) == "Cannot start mvn: not found on PATH"
    assert exc.command == "mvn"
