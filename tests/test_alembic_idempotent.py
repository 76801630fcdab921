"""Regression: alembic upgrade head is idempotent (no exception when run twice)."""

import os

import pytest

from tests._db_bootstrap import get_test_schema_strategy, run_alembic_upgrade
from tests.conftest import requires_db


@requires_db
@pytest.mark.skipif(
    get_test_schema_strategy() == "ensure_tables",
    reason="Alembic idempotency test only applies when TEST_SCHEMA_STRATEGY=alembic",
)
def test_alembic_upgrade_head_twice_no_exception():
    url = os.environ["DATABASE_TEST_URL"]
    run_alembic_upgrade(url)
    run_alembic_upgrade(url)
