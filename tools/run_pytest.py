"""Run the test suite, preferring the project's virtual environment.

``--fast`` deselects tests marked ``slow`` (large rasters and threaded
optimization scenarios). Logging inside the tests defaults to DEBUG so
captured output is useful when a test fails.
"""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path


def _venv_python(root: Path) -> Path | None:
    scripts_dir = "Scripts" if os.name == "nt" else "bin"
    executable = "python.exe" if os.name == "nt" else "python"
    candidate = root / ".venv" / scripts_dir / executable
    return candidate if candidate.exists() else None


def build_command(python: str, argv: list[str]) -> list[str]:
    args = list(argv)
    marker: list[str] = []
    if "--fast" in args:
        args.remove("--fast")
        marker = ["-m", "not slow"]
    return [python, "-m", "pytest", "-q", *marker, *args]


def main(argv: list[str] | None = None) -> int:
    root = Path(__file__).resolve().parents[1]
    python = str(_venv_python(root) or sys.executable)
    env = dict(os.environ)
    env.setdefault("FOLIO_MEDIA_LOG_LEVEL", "DEBUG")
    return subprocess.call(build_command(python, argv or []), cwd=root, env=env)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
