"""Pytest fixtures for service and API tests."""

import os

os.environ.setdefault("ENV", "test")
os.environ["EMBED_PROVIDER"] = "deterministic"

# Shared marker from tests.conftest (single source of truth)
from tests.conftest import requires_db  # noqa: F401,E402
