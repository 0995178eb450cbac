import json
import subprocess
import sys

from tests.conftest import cli_env


def run(*args: str) -> dict:
    p = subprocess.run([sys.executable, "-m", "bddrun.cli", *args], env=cli_env(), capture_output=True, text=True)
    assert p.returncode == 0
    return json.loads(p.stdout)


def test_version_json_envelope():
    out = run("version", "--json")
    assert out["ok"] is True
    assert out["command"] == "version"
    assert out["data"]["version"] == "0.1.0"
    assert "limits" in out


def test_version_plain():
    p = subprocess.run([sys.executable, "-m", "bddrun.cli", "version"], env=cli_env(), capture_output=True, text=True)
    assert p.returncode == 0
    assert p.stdout.strip() == "bddrun 0.1.0"
