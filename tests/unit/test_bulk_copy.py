"""Unit tests for BulkCopy."""

import asyncio
import threading
from unittest.mock import MagicMock, call, patch

import pandas as pd
import pytest

from sqlbulk.config import BulkCopySettings
from sqlbulk.connections.sql_server import SqlServerConnection
from sqlbulk.exceptions import ConnectionError, TransferError
from sqlbulk.writers.bulk_copy import BulkCopy

DEST = "[Library].[dbo].[Books]"
MAPPINGS = [("title", "Title"), ("isbn", "ISBN")]


@pytest.fixture
def mock_conn():
    conn = MagicMock()
    conn.execute_many.side_effect = lambda sql, rows, timeout=None: len(rows)
    return conn


@pytest.fixture
def buffer():
    return pd.DataFrame(
        {"title": [f"Book {i}" for i in range(5)], "isbn": [str(i) for i in range(5)]},
        dtype=object,
    )


def make_copy(conn, **settings):
    return BulkCopy(conn, DEST, MAPPINGS, BulkCopySettings(**settings))


@pytest.fixture
def session():
    """Driver session that records statements, commits and rollbacks in order."""
    session = MagicMock()
    session.closed = False
    session.calls = []
    session.failing_batches = {}

    def exec_driver_sql(sql, params=None):
        if params is None:
            session.calls.append(sql)
            return MagicMock(returns_rows=False)
        session.calls.append("executemany")
        batch = session.calls.count("executemany")
        if batch in session.failing_batches:
            raise session.failing_batches[batch]
        return MagicMock(returns_rows=False)

    session.exec_driver_sql.side_effect = exec_driver_sql
    session.commit.side_effect = lambda: session.calls.append("COMMIT")
    session.rollback.side_effect = lambda: session.calls.append("ROLLBACK")
    return session


@pytest.fixture
def sql_conn(session):
    engine = MagicMock()
    engine.connect.return_value = session
    conn = SqlServerConnection(server="localhost", database="Library")
    with patch("sqlalchemy.create_engine", return_value=engine):
        conn.open()
    return conn


class TestBuildInsertSql:
    def test_basic(self, mock_conn):
        sql = make_copy(mock_conn).build_insert_sql()
        assert sql == f"INSERT INTO {DEST} ([Title], [ISBN]) VALUES (?, ?)"

    def test_table_lock(self, mock_conn):
        sql = make_copy(mock_conn, table_lock=True).build_insert_sql()
        assert sql.startswith(f"INSERT INTO {DEST} WITH (TABLOCK) (")


class TestWriteToServer:
    def test_single_batch_by_default(self, mock_conn, buffer):
        assert make_copy(mock_conn).write_to_server(buffer) == 5

        assert mock_conn.execute_many.call_count == 1
        _, rows = mock_conn.execute_many.call_args.args
        assert rows[0] == ("Book 0", "0")
        assert mock_conn.execute_many.call_args.kwargs == {"timeout": 600}
        mock_conn.commit.assert_called_once()

    def test_batches(self, mock_conn, buffer):
        make_copy(mock_conn, batch_size=2).write_to_server(buffer)

        sizes = [len(c.args[1]) for c in mock_conn.execute_many.call_args_list]
        assert sizes == [2, 2, 1]
        mock_conn.commit.assert_called_once()

    def test_internal_transaction_commits_each_batch(self, mock_conn, buffer):
        make_copy(mock_conn, batch_size=2, use_internal_transaction=True).write_to_server(buffer)
        assert mock_conn.commit.call_count == 3

    def test_keep_identity_wraps_identity_insert(self, mock_conn, buffer):
        make_copy(mock_conn, keep_identity=True).write_to_server(buffer)

        assert mock_conn.execute_sql.call_args_list == [
            call(f"SET IDENTITY_INSERT {DEST} ON"),
            call(f"SET IDENTITY_INSERT {DEST} OFF"),
        ]

    def test_keep_identity_switched_off_after_failure(self, mock_conn, buffer):
        mock_conn.execute_many.side_effect = RuntimeError("boom")

        with pytest.raises(TransferError):
            make_copy(mock_conn, keep_identity=True).write_to_server(buffer)

        mock_conn.execute_sql.assert_called_with(f"SET IDENTITY_INSERT {DEST} OFF")

    def test_failure_rolls_back(self, mock_conn, buffer):
        mock_conn.execute_many.side_effect = RuntimeError("Violation of PRIMARY KEY")

        with pytest.raises(TransferError) as exc_info:
            make_copy(mock_conn).write_to_server(buffer)

        mock_conn.rollback.assert_called_once()
        mock_conn.commit.assert_not_called()
        assert exc_info.value.rows_expected == 5
        assert exc_info.value.rows_transferred == 0
        assert "Violation of PRIMARY KEY" in str(exc_info.value)

    def test_failed_batch_reports_committed_rows(self, mock_conn, buffer):
        mock_conn.execute_many.side_effect = [2, RuntimeError("timeout"), 1]

        with pytest.raises(TransferError) as exc_info:
            make_copy(
                mock_conn, batch_size=2, use_internal_transaction=True
            ).write_to_server(buffer)

        assert exc_info.value.rows_transferred == 2

    def test_row_count_mismatch(self, mock_conn, buffer):
        mock_conn.execute_many.side_effect = lambda sql, rows, timeout=None: len(rows) - 1

        with pytest.raises(TransferError, match="does not match"):
            make_copy(mock_conn).write_to_server(buffer)

    def test_async(self, mock_conn, buffer):
        result = asyncio.run(make_copy(mock_conn).write_to_server_async(buffer))
        assert result == 5

    def test_rollback_failure_keeps_transfer_error(self, mock_conn, buffer):
        mock_conn.execute_many.side_effect = RuntimeError("TCP Provider: connection reset")
        mock_conn.rollback.side_effect = RuntimeError("connection is closed")

        with pytest.raises(TransferError, match="connection reset"):
            make_copy(mock_conn).write_to_server(buffer)

    def test_stop_before_next_batch_rolls_back(self, mock_conn, buffer):
        stop = threading.Event()

        def send(sql, rows, timeout=None):
            stop.set()
            return len(rows)

        mock_conn.execute_many.side_effect = send

        with pytest.raises(TransferError, match="cancelled") as exc_info:
            make_copy(mock_conn, batch_size=2).write_to_server(buffer, stop=stop)

        assert mock_conn.execute_many.call_count == 1
        mock_conn.rollback.assert_called_once()
        mock_conn.commit.assert_not_called()
        assert exc_info.value.rows_transferred == 0


class TestWriteThroughSqlServerConnection:
    def test_failed_batch_rolled_back_before_identity_insert_off(self, session, sql_conn, buffer):
        session.failing_batches[2] = RuntimeError("Violation of PRIMARY KEY")

        with pytest.raises(TransferError) as exc_info:
            make_copy(sql_conn, batch_size=2, keep_identity=True).write_to_server(buffer)

        assert session.calls == [
            f"SET IDENTITY_INSERT {DEST} ON",
            "COMMIT",
            "executemany",
            "executemany",
            "ROLLBACK",
            f"SET IDENTITY_INSERT {DEST} OFF",
            "COMMIT",
        ]
        assert exc_info.value.rows_transferred == 0

    def test_successful_transfer_commits_before_identity_insert_off(
        self, session, sql_conn, buffer
    ):
        assert make_copy(sql_conn, batch_size=2, keep_identity=True).write_to_server(buffer) == 5

        assert session.calls == [
            f"SET IDENTITY_INSERT {DEST} ON",
            "COMMIT",
            "executemany",
            "executemany",
            "executemany",
            "COMMIT",
            f"SET IDENTITY_INSERT {DEST} OFF",
            "COMMIT",
        ]

    def test_dropped_connection_still_raises_transfer_error(self, session, sql_conn, buffer):
        session.failing_batches[1] = RuntimeError("TCP Provider: connection reset")
        session.rollback.side_effect = RuntimeError("connection is closed")

        with pytest.raises(TransferError, match="connection reset") as exc_info:
            make_copy(sql_conn).write_to_server(buffer)

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert exc_info.value.rows_transferred == 0

