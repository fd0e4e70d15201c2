"""Shared test fixtures."""

import io
import tempfile
from pathlib import Path

import pytest
from openpyxl import Workbook

from ledgercat.config import Config, DatabaseConfig, ImportConfig, SecurityConfig
from ledgercat.db.repository import Repository

STATEMENT_HEADER = [
    "F. Operativa",
    "Concepto",
    "F. Valor",
    "Importe",
    "Saldo",
    "Referencia 1",
    "Referencia 2",
]


def make_workbook(rows, sheet_name: str = "Hoja1", preamble=()) -> bytes:
    """Build an xlsx buffer with optional preamble lines above the rows."""
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name
    for line in preamble:
        ws.append(list(line))
    for row in rows:
        ws.append(list(row))
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def make_statement(rows, **kwargs) -> bytes:
    """Build a statement workbook with the standard header."""
    return make_workbook([STATEMENT_HEADER, *rows], **kwargs)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db_path(temp_dir):
    """Create a temporary database path."""
    return temp_dir / "test.db"


@pytest.fixture
def database_config(temp_db_path):
    """Create a test database config."""
    return DatabaseConfig(path=temp_db_path)


@pytest.fixture
def security_config():
    """Create a test security config with a callback secret."""
    return SecurityConfig(callback_secret="test-secret")


@pytest.fixture
def config(database_config, security_config):
    """Create a test config."""
    return Config(
        database=database_config,
        imports=ImportConfig(),
        security=security_config,
    )


@pytest.fixture
async def repository(temp_db_path):
    """Create a repository with a temporary database."""
    repo = Repository(temp_db_path)
    await repo.connect()
    yield repo
    await repo.close()
