"""Stand-in for `mvn` that prints Maven + Cucumber style output.

Usage: fake_runner.py [--mode pass|fail|empty|broken|hang|leak] [--scenarios N] [--delay S]
                      [--no-report] [--record FILE] <maven arguments...>

`broken` runs no scenarios and still fails the build. `leak` passes but leaves a
child behind that holds stdout open for a minute, like a forked JVM would.
"""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
import time
from pathlib import Path

REPORT_PREFIX = "-Dcucumber.plugin=html:"


def _say(line: str) -> None:
    print(line, flush=True)


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--mode", default="pass", choices=["pass", "fail", "empty", "broken", "hang", "leak"])
    parser.add_argument("--scenarios", type=int, default=2)
    parser.add_argument("--delay", type=float, default=0.0)
    parser.add_argument("--no-report", action="store_true")
    parser.add_argument("--record")
    parser.add_argument("--version", action="store_true")
    args, rest = parser.parse_known_args(argv)

    if args.version:
        _say("Apache Maven 3.9.6 (fake)")
        return 0

    if args.record:
        Path(args.record).write_text(json.dumps(rest), encoding="utf-8")

    report = next((Path(a[len(REPORT_PREFIX):]) for a in rest if a.startswith(REPORT_PREFIX)), None)

    _say("[INFO] Scanning for projects...")
    _say("[INFO] Building fake-suite 1.0")

    if args.mode == "hang":
        _say("Scenario: never finishes")
        time.sleep(600)
        return 0

    if args.mode == "leak":
        subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])

    total = 0 if args.mode in ("empty", "broken") else args.scenarios
    failed = 1 if args.mode == "fail" and total else 0
    for i in range(total):
        _say(f"  Scenario: example {i + 1}")
        if args.delay:
            time.sleep(args.delay)

    if total:
        parts = [f"{failed} failed"] if failed else []
        parts.append(f"{total - failed} passed")
        _say(f"{total} Scenarios ({', '.join(parts)})")
        _say(f"{total * 4} Steps ({failed} failed, {total * 4 - failed} passed)" if failed else f"{total * 4} Steps ({total * 4} passed)")
    else:
        _say("0 Scenarios")
        _say("0 Steps")
    _say("0m0.042s")

    if report is not None and not args.no_report:
        report.parent.mkdir(parents=True, exist_ok=True)
        report.write_text("<html><body>fake cucumber report</body></html>", encoding="utf-8")

    if failed or args.mode == "broken":
        _say("[INFO] BUILD FAILURE")
        return 1
    _say("[INFO] BUILD SUCCESS")
    _say("[INFO] Total time:  1.234 s")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
