"""Root conftest: test DB bootstrap and env apply to ALL test paths (tests/, apps/nl2sql/tests/)."""

import os

import pytest

# Deterministic embeddings; no model download in tests
os.environ.setdefault("ENV", "test")
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("EMBED_PROVIDER", "deterministic")

DATABASE_TEST_URL = os.getenv("DATABASE_TEST_URL")

from tests._db_bootstrap import (  # noqa: E402
    ensure_test_db_guard,
    postgres_reachable,
    run_test_db_schema_fixture,
)

# Fails early if the test URL does not point at a *_test database
if DATABASE_TEST_URL:
    ensure_test_db_guard()


@pytest.fixture(scope="session", autouse=True)
def test_db_schema():
    """Reset test DB schema at session start when DATABASE_TEST_URL is set and reachable.
    DB tests are skipped via @requires_db otherwise."""
    if not DATABASE_TEST_URL or not postgres_reachable(DATABASE_TEST_URL):
        return
    run_test_db_schema_fixture()
