import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

import pytest


@pytest.fixture(autouse=True)
def configure_logging():
    """Configure logging to avoid Rich Text object issues in tests."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if hasattr(handler, "__class__") and "Rich" in handler.__class__.__name__:
            root.removeHandler(handler)
    logging.basicConfig(level=logging.WARNING, format="%(message)s", force=True)
    yield
    logging.basicConfig(level=logging.INFO, force=True)


@dataclass
class Book:
    title: str
    isbn: str
    price: Optional[Decimal] = None
    id: Optional[int] = None


# (COLUMN_NAME, DATA_TYPE, CHARACTER_MAXIMUM_LENGTH, NUMERIC_PRECISION, NUMERIC_SCALE,
#  DATETIME_PRECISION) as returned by INFORMATION_SCHEMA.COLUMNS
BOOKS_COLUMNS = [
    ("Id", "int", None, 10, 0, None),
    ("Title", "nvarchar", 200, None, None, None),
    ("ISBN", "varchar", 13, None, None, None),
    ("Price", "decimal", None, 10, 2, None),
]


class FakeConnection:
    """
    In-memory stand-in for SqlServerConnection.

    Records every statement, keeps rows bulk-copied into the staging table and
    simulates the identity-generating MERGE. ``fail_on`` maps a SQL fragment to
    the exception raised by every statement containing it; ``fail_drop`` is
    raised by the staging table drop.
    """

    def __init__(self, destination_columns=None, database: str = "Library"):
        self.database = database
        self.destination_columns = (
            BOOKS_COLUMNS if destination_columns is None else destination_columns
        )
        self.statements: List[str] = []
        self.inserted: List[tuple] = []
        self.staged: List[tuple] = []
        self.generated = {}
        self.fail_on = {}
        self.lose_identities = 0
        self.fail_drop = None
        self.on_execute_many = None
        self.next_identity = 100
        self.commits = 0
        self.rollbacks = 0
        self.opened = 0
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self.opened += 1
        self._open = True

    async def open_async(self) -> None:
        self.open()

    def _maybe_fail(self, sql: str) -> None:
        for fragment, exc in self.fail_on.items():
            if fragment in sql:
                raise exc

    def _merge(self) -> None:
        # Rows are processed in reverse so generated ids do not follow staging order
        for row in reversed(self.staged):
            self.generated[row[-1]] = self.next_identity
            self.inserted.append(row[:-1])
            self.next_identity += 1

    def execute_sql(self, sql: str, timeout=None):
        self.statements.append(sql)
        self._maybe_fail(sql)
        if "INFORMATION_SCHEMA.COLUMNS" in sql:
            return list(self.destination_columns)
        if sql.startswith("MERGE INTO"):
            self._merge()
            return []
        if sql.startswith("SELECT") and "#TmpOutput" in sql:
            rows = sorted(self.generated.items())
            return rows[self.lose_identities :]
        if self.is_drop(sql):
            if self.fail_drop is not None:
                raise self.fail_drop
            self.staged = []
        return []

    def execute_many(self, sql: str, rows, timeout=None) -> int:
        self.statements.append(sql)
        self._maybe_fail(sql)
        if self.on_execute_many is not None:
            self.on_execute_many()
        if "INTO #TmpTable" in sql:
            self.staged.extend(rows)
        else:
            self.inserted.extend(rows)
        return len(rows)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    @staticmethod
    def is_drop(sql: str) -> bool:
        return "DROP TABLE" in sql and "CREATE TABLE" not in sql

    @property
    def drop_count(self) -> int:
        return sum(1 for s in self.statements if self.is_drop(s))

    def statements_containing(self, fragment: str) -> List[str]:
        return [s for s in self.statements if fragment in s]

    def index_of(self, fragment: str) -> int:
        for i, sql in enumerate(self.statements):
            if fragment in sql:
                return i
        raise AssertionError(f"No statement contains {fragment!r}")


@pytest.fixture
def fake_conn():
    return FakeConnection()


@pytest.fixture
def books():
    return [
        Book(title="Dune", isbn="9780441013593", price=Decimal("9.99")),
        Book(title="Hyperion", isbn="9780553283686", price=Decimal("8.50")),
        Book(title="Solaris", isbn="9780156027601"),
    ]


@pytest.fixture
def book_type():
    return Book


@pytest.fixture
def make_conn():
    """Factory for fake connections with a custom destination schema."""
    return FakeConnection
