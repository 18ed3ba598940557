"""Connection implementations for SQLBULK."""

from sqlbulk.connections.sql_server import SqlServerConnection

__all__ = ["SqlServerConnection"]
