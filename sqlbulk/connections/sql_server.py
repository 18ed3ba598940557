"""
SQL Server Connection
=====================

Holds a single SQLAlchemy session (mssql+pyodbc) for the lifetime of a bulk
operation. Temporary staging tables are scoped to that session, so every
statement of a commit must go through the same connection.
"""

import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

from sqlbulk.config import SQLServerAuthMode, SQLServerConnectionConfig
from sqlbulk.exceptions import ConnectionError
from sqlbulk.utils.async_io import run_blocking
from sqlbulk.utils.logging import logger
from sqlbulk.utils.logging_context import get_logging_context


class SqlServerConnection:
    """
    SQL Server / Azure SQL connection.

    Supports:
    - SQL authentication (username/password)
    - Azure Active Directory Managed Identity
    - Raw ODBC connection strings
    - pyodbc fast_executemany for batched inserts

    The connection is opened lazily. Bulk operations open it when needed and
    never close it; closing is the caller's responsibility.
    """

    def __init__(
        self,
        server: str,
        database: str,
        driver: str = "ODBC Driver 18 for SQL Server",
        username: Optional[str] = None,
        password: Optional[str] = None,
        auth_mode: str = "aad_msi",  # "aad_msi", "sql", "connection_string"
        connection_string: Optional[str] = None,
        port: int = 1433,
        timeout: int = 30,
        use_fmtonly: bool = False,
    ):
        """
        Initialize SQL Server connection.

        Args:
            server: SQL server hostname (e.g., 'myserver.database.windows.net')
            database: Database name
            driver: ODBC driver name (default: ODBC Driver 18 for SQL Server)
            username: SQL auth username (required if auth_mode='sql')
            password: SQL auth password (required if auth_mode='sql')
            auth_mode: Authentication mode ('aad_msi', 'sql', 'connection_string')
            connection_string: Full ODBC connection string (auth_mode='connection_string')
            port: SQL Server port (default: 1433)
            timeout: Login timeout in seconds (default: 30)
            use_fmtonly: Append UseFMTONLY=Yes so older drivers can describe
                parameters of inserts into #temp tables
        """
        self.server = server
        self.database = database
        self.driver = driver
        self.username = username
        self.password = password
        self.auth_mode = auth_mode
        self.connection_string = connection_string
        self.port = port
        self.timeout = timeout
        self.use_fmtonly = use_fmtonly
        self._engine = None
        self._connection = None
        self._lock = threading.RLock()

        if password:
            logger.register_secret(password)

    @classmethod
    def from_config(cls, config: SQLServerConnectionConfig) -> "SqlServerConnection":
        """Build a connection from a validated configuration model."""
        auth = config.auth
        kwargs: dict = {}
        if auth.mode == SQLServerAuthMode.SQL_LOGIN:
            kwargs = {"auth_mode": "sql", "username": auth.username, "password": auth.password}
        elif auth.mode == SQLServerAuthMode.CONNECTION_STRING:
            kwargs = {
                "auth_mode": "connection_string",
                "connection_string": auth.connection_string,
            }
        return cls(
            server=config.host,
            database=config.database,
            driver=config.driver,
            port=config.port,
            timeout=config.timeout,
            use_fmtonly=config.use_fmtonly,
            **kwargs,
        )

    @property
    def name(self) -> str:
        return f"SqlServer({self.server}/{self.database})"

    def odbc_dsn(self) -> str:
        """Build ODBC connection string.

        Returns:
            ODBC DSN string

        Example:
            >>> conn = SqlServerConnection(server="myserver.database.windows.net", database="mydb")
            >>> conn.odbc_dsn()
            'Driver={ODBC Driver 18 for SQL Server};Server=tcp:myserver...'
        """
        if self.auth_mode == "connection_string" and self.connection_string:
            return self.connection_string

        dsn = (
            f"Driver={{{self.driver}}};"
            f"Server=tcp:{self.server},{self.port};"
            f"Database={self.database};"
            f"Encrypt=yes;"
            f"TrustServerCertificate=yes;"
            f"Connection Timeout={self.timeout};"
        )

        if self.username and self.password:
            dsn += f"UID={self.username};PWD={self.password};"
        elif self.auth_mode == "aad_msi":
            dsn += "Authentication=ActiveDirectoryMsi;"

        if self.use_fmtonly:
            dsn += "UseFMTONLY=Yes;"

        return dsn

    def validate(self) -> None:
        """Validate connection configuration."""
        if self.auth_mode == "connection_string":
            if not self.connection_string:
                raise ValueError("auth_mode='connection_string' requires connection_string")
            return
        if not self.server:
            raise ValueError("SQL Server connection requires 'server'")
        if not self.database:
            raise ValueError("SQL Server connection requires 'database'")
        if self.auth_mode == "sql":
            if not self.username:
                raise ValueError("SQL Server with auth_mode='sql' requires username")
            if not self.password:
                raise ValueError("SQL Server with auth_mode='sql' requires password")

    def get_engine(self):
        """
        Get or create SQLAlchemy engine.

        Returns:
            SQLAlchemy engine instance

        Raises:
            ConnectionError: If engine creation fails
        """
        if self._engine is not None:
            return self._engine

        from urllib.parse import quote_plus

        from sqlalchemy import create_engine

        try:
            connection_url = f"mssql+pyodbc:///?odbc_connect={quote_plus(self.odbc_dsn())}"
            self._engine = create_engine(
                connection_url,
                fast_executemany=True,
                pool_pre_ping=True,
                echo=False,
            )
            return self._engine
        except Exception as e:
            raise ConnectionError(
                connection_name=self.name,
                reason=f"Failed to create engine: {str(e)}",
                suggestions=self._get_error_suggestions(str(e)),
            ) from e

    @property
    def is_open(self) -> bool:
        return self._connection is not None and not self._connection.closed

    def open(self) -> None:
        """Open the session if it is not already open."""
        with self._lock:
            if self.is_open:
                return
            self.validate()
            try:
                self._connection = self.get_engine().connect()
            except ConnectionError:
                raise
            except Exception as e:
                raise ConnectionError(
                    connection_name=self.name,
                    reason=f"Failed to open connection: {str(e)}",
                    suggestions=self._get_error_suggestions(str(e)),
                ) from e
            get_logging_context().log_connection("sql_server", self.name, action="open")

    async def open_async(self) -> None:
        await run_blocking(self.open)

    def _require_open(self):
        if not self.is_open:
            raise ConnectionError(
                connection_name=self.name,
                reason="Connection is not open",
                suggestions=["Call open() before executing statements"],
            )
        return self._connection

    @contextmanager
    def _query_timeout(self, conn: Any, timeout: Optional[int]) -> Iterator[None]:
        if timeout is None:
            yield
            return
        # pyodbc applies Connection.timeout to every statement that follows
        driver_conn = conn.connection.driver_connection
        previous = driver_conn.timeout
        driver_conn.timeout = timeout
        try:
            yield
        finally:
            driver_conn.timeout = previous

    def _rollback_quietly(self, conn: Any) -> None:
        try:
            conn.rollback()
        except Exception as e:
            logger.warning("Rollback after failed statement also failed", error=str(e))

    def execute_sql(self, sql: str, timeout: Optional[int] = None) -> List[tuple]:
        """
        Execute a SQL batch and commit.

        Args:
            sql: SQL statement or batch
            timeout: Optional statement timeout in seconds

        Returns:
            Result rows as tuples (empty list for statements without a result set)

        Raises:
            ConnectionError: If execution fails
        """
        with self._lock:
            conn = self._require_open()
            try:
                with self._query_timeout(conn, timeout):
                    result = conn.exec_driver_sql(sql)
                rows = [tuple(row) for row in result.fetchall()] if result.returns_rows else []
                conn.commit()
                return rows
            except Exception as e:
                self._rollback_quietly(conn)
                raise ConnectionError(
                    connection_name=self.name,
                    reason=f"Statement execution failed: {str(e)}",
                    suggestions=self._get_error_suggestions(str(e)),
                ) from e

    def execute_many(
        self, sql: str, rows: Sequence[tuple], timeout: Optional[int] = None
    ) -> int:
        """
        Execute a parameterized statement once per row without committing.

        Returns:
            Number of parameter rows sent
        """
        with self._lock:
            conn = self._require_open()
            try:
                with self._query_timeout(conn, timeout):
                    conn.exec_driver_sql(sql, list(rows))
                return len(rows)
            except Exception as e:
                raise ConnectionError(
                    connection_name=self.name,
                    reason=f"Batch execution failed: {str(e)}",
                    suggestions=self._get_error_suggestions(str(e)),
                ) from e

    def commit(self) -> None:
        with self._lock:
            self._require_open().commit()

    def rollback(self) -> None:
        with self._lock:
            if self.is_open:
                self._connection.rollback()

    def close(self):
        """Close the session and dispose of the engine."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
            if self._engine:
                self._engine.dispose()
                self._engine = None

    def _get_error_suggestions(self, error_msg: str) -> List[str]:
        """Generate suggestions based on error message."""
        suggestions = []
        error_lower = error_msg.lower()

        if "login failed" in error_lower:
            suggestions.append("Check username and password")
            suggestions.append(f"Verify auth_mode is correct (current: {self.auth_mode})")

        if "firewall" in error_lower or "tcp provider" in error_lower:
            suggestions.append("Check SQL Server firewall rules")
            suggestions.append("Ensure client IP is allowed")

        if "driver" in error_lower:
            suggestions.append(f"Verify ODBC driver '{self.driver}' is installed")
            suggestions.append("On Linux: sudo apt-get install msodbcsql18")

        if "timeout" in error_lower:
            suggestions.append("Increase BulkCopySettings.timeout or reduce batch_size")

        return suggestions
