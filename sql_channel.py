"""
SQL Server command channel

Executes T-SQL batches and stored procedures on a managed server through
pyodbc. Each connection profile owns one pooled autocommit session, so a
`USE [db]` issued by one call stays in effect for the calls that follow on
the same profile.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import pyodbc

from replication_errors import RemoteCallFailure, ValidationFailure
from replication_models import SQL_AUTH, ServerConnection

logger = logging.getLogger(__name__)

_PROCEDURE_NAME = re.compile(r'^[A-Za-z_][\w]*(\.[A-Za-z_][\w]*){0,2}$')
_PARAMETER_NAME = re.compile(r'^[A-Za-z_]\w*$')
_USE_STATEMENT = re.compile(r'^\s*USE\s+\[?[^\]\s]+\]?\s*;?\s*$', re.IGNORECASE)


def quote_name(name: str) -> str:
    """Bracket-quote an identifier"""
    return '[' + name.replace(']', ']]') + ']'


def quote_literal(value: Optional[str]) -> str:
    """Unicode string literal, or NULL"""
    if value is None:
        return 'NULL'
    return "N'" + str(value).replace("'", "''") + "'"


def describe_query(text: str) -> str:
    """One-line summary of a batch, skipping context switches"""
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    for line in lines:
        if not line.startswith('--') and not _USE_STATEMENT.match(line):
            return line if len(line) <= 80 else line[:77] + '...'
    return lines[0] if lines else '<empty batch>'


def fetch_rows(cursor) -> List[Dict[str, Any]]:
    """First result set of the batch as column-name keyed dicts"""
    while cursor.description is None:
        if not cursor.nextset():
            return []
    columns = [column[0] for column in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


class SqlCommandChannel:
    """Runs queries and procedures against SQL Server, one session per profile"""

    def __init__(self, driver: str = 'ODBC Driver 17 for SQL Server', connection_timeout: int = 30):
        self.driver = driver
        self.connection_timeout = connection_timeout
        self.connection_pool = {}

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'SqlCommandChannel':
        rep_cfg = config.get('replication', {})
        return cls(
            driver=rep_cfg.get('driver', 'ODBC Driver 17 for SQL Server'),
            connection_timeout=rep_cfg.get('connection_timeout', 30)
        )

    def get_connection_string(self, connection: ServerConnection) -> str:
        """Generate ODBC connection string"""
        conn_str = (
            f"DRIVER={{{self.driver}}};"
            f"SERVER={connection.server_address};"
            f"TrustServerCertificate=yes;"
            f"Connection Timeout={self.connection_timeout};"
        )
        if connection.authentication == SQL_AUTH:
            conn_str += f"UID={connection.username};PWD={connection.password};"
        else:
            conn_str += "Trusted_Connection=yes;"
        if connection.database:
            conn_str += f"DATABASE={connection.database};"
        return conn_str

    def get_connection(self, connection: ServerConnection) -> pyodbc.Connection:
        """Pooled session for the profile, opened on first use"""
        pool_key = connection.pool_key
        if pool_key in self.connection_pool:
            return self.connection_pool[pool_key]

        try:
            conn = pyodbc.connect(
                self.get_connection_string(connection),
                autocommit=True,
                timeout=self.connection_timeout
            )
        except pyodbc.Error as e:
            self._log_driver_error(connection, e)
            raise RemoteCallFailure('Connect', connection.server_address, e, _error_code(e)) from e
        self.connection_pool[pool_key] = conn
        logger.info(f"Connected to {connection.server_address}")
        return conn

    def run_query(self, connection: ServerConnection, text: str) -> List[Dict[str, Any]]:
        """Execute a T-SQL batch and return its first result set"""
        return self._execute(connection, describe_query(text), text, ())

    def run_procedure(self, connection: ServerConnection, name: str,
                      params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Execute a stored procedure with named parameters"""
        if not _PROCEDURE_NAME.match(name):
            raise ValidationFailure(f"Invalid procedure name '{name}'")
        params = params or {}
        assignments = []
        values = []
        for key, value in params.items():
            if not _PARAMETER_NAME.match(key):
                raise ValidationFailure(f"Invalid parameter name '{key}' for {name}")
            assignments.append(f"@{key} = ?")
            values.append(value)

        sql = f"EXEC {name}"
        if assignments:
            sql += ' ' + ', '.join(assignments)
        return self._execute(connection, f"EXEC {name}", sql, tuple(values))

    def _execute(self, connection: ServerConnection, intent: str, sql: str, params: tuple) -> List[Dict[str, Any]]:
        conn = self.get_connection(connection)
        cursor = None
        try:
            cursor = conn.cursor()
            if params:
                cursor.execute(sql, params)
            else:
                cursor.execute(sql)
            return fetch_rows(cursor)
        except pyodbc.Error as e:
            self._log_driver_error(connection, e)
            logger.error(f"{intent} failed on {connection.server_address}")
            # A broken link cannot be reused; statement errors keep the session and its database context
            if isinstance(e, (pyodbc.OperationalError, pyodbc.InterfaceError)):
                self.close(connection)
            raise RemoteCallFailure(intent, connection.server_address, e, _error_code(e)) from e
        finally:
            if cursor is not None:
                try:
                    cursor.close()
                except pyodbc.Error:
                    pass

    def _log_driver_error(self, connection: ServerConnection, error: pyodbc.Error):
        error_code = _error_code(error)
        error_msg = error.args[1] if len(error.args) > 1 else str(error)
        logger.error(f"SQL error on {connection.server_address} (code {error_code}): {error_msg}")

        if '18456' in error_msg or 'login failed' in error_msg.lower():
            logger.error("Authentication failure - check credentials")
        elif 'Named Pipes Provider' in error_msg or 'could not open a connection' in error_msg.lower():
            logger.error("SQL Server connectivity issue detected")
        elif 'timeout' in error_msg.lower():
            logger.error(f"Timeout talking to {connection.server_address}")

    def close(self, connection: ServerConnection):
        """Drop the profile's session; the next call starts in the default database"""
        conn = self.connection_pool.pop(connection.pool_key, None)
        if conn is not None:
            try:
                conn.close()
            except pyodbc.Error:
                pass

    def close_all_connections(self):
        """Close all pooled connections"""
        for conn in self.connection_pool.values():
            try:
                conn.close()
            except pyodbc.Error:
                pass
        self.connection_pool.clear()


def _error_code(error: BaseException) -> Optional[str]:
    if error.args and isinstance(error.args[0], str):
        return error.args[0]
    return None
