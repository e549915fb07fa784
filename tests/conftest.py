"""
Pytest configuration for stack-signal tests.

Adds the project root to sys.path so the package imports without an install,
and forces DATABASE_PATH to a temp file so no test touches data/.
"""

import os
import sys
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

if "DATABASE_PATH" not in os.environ:
    os.environ["DATABASE_PATH"] = str(Path(tempfile.gettempdir()) / "pytest_stacksignal.db")

from stacksignal.api.company_registry import CompanyRegistry  # noqa: E402
from stacksignal.database import JobDatabase  # noqa: E402


@pytest.fixture(scope="function")
def test_db_path(tmp_path, monkeypatch) -> Generator[str, None, None]:
    """
    Provides an isolated database path and points DATABASE_PATH at it.

    Example:
        def test_custom_init(test_db_path):
            db = JobDatabase(test_db_path)
    """
    db_path = tmp_path / "test_stacksignal.db"
    monkeypatch.setenv("DATABASE_PATH", str(db_path))
    yield str(db_path)


@pytest.fixture(scope="function")
def test_db(test_db_path) -> JobDatabase:
    """Fresh job store for each test"""
    return JobDatabase(test_db_path)


@pytest.fixture(scope="function")
def registry(test_db_path) -> CompanyRegistry:
    """Fresh company registry sharing the job store's database file"""
    return CompanyRegistry(test_db_path)
