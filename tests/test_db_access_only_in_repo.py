"""
Enforce: DB reads/writes (session.execute, session.query, get_db()) only in repo.py.
Repo is the single place for DB access; no raw SQL/ORM outside it.
"""

import subprocess
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent

# db.py defines get_db; repo.py is the only caller
ALLOWED_DB_ACCESS_FILES = {"apps/nl2sql/services/repo.py", "apps/nl2sql/db.py"}


def _grep_pattern(pattern: str) -> list[tuple[str, int, str]]:
    """Run ripgrep over apps/ and cron/, return [(file, line_no, line), ...]."""
    try:
        out = subprocess.run(
            ["rg", "-n", pattern, "--type", "py", "apps", "cron"],
            capture_output=True,
            text=True,
            check=False,
            cwd=ROOT,
        )
    except FileNotFoundError:
        return []  # rg not installed, skip
    if out.returncode != 0:
        return []
    results = []
    for line in (out.stdout or "").strip().split("\n"):
        parts = line.split(":", 2)
        if len(parts) == 3 and parts[1].isdigit():
            results.append((parts[0], int(parts[1]), parts[2].strip()))
    return results


def _bad_hits(pattern: str) -> list[tuple[str, int, str]]:
    return [
        (f, ln, c)
        for f, ln, c in _grep_pattern(pattern)
        if f.replace("\\", "/").lstrip("./") not in ALLOWED_DB_ACCESS_FILES and "/tests/" not in f
    ]


def _fmt(bad: list[tuple[str, int, str]]) -> str:
    return "\n".join(f"  {f}:{ln}: {c}" for f, ln, c in bad)


def test_no_session_execute_outside_repo() -> None:
    bad = _bad_hits(r"session\.execute")
    assert not bad, "session.execute must only be in repo.py. Found in:\n" + _fmt(bad)


def test_no_session_query_outside_repo() -> None:
    bad = _bad_hits(r"session\.query")
    assert not bad, "session.query must only be in repo.py. Found in:\n" + _fmt(bad)


def test_no_get_db_call_outside_repo() -> None:
    bad = _bad_hits(r"get_db\s*\(\s*\)")
    assert not bad, "get_db() may only be called from repo.py. Found in:\n" + _fmt(bad)
