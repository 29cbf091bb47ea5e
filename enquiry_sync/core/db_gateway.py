"""
SQL Server query gateway.

Owns the single shared pymssql connection, translates ``?`` placeholders
into pymssql named parameters and transparently reconnects and retries a
statement once when it fails because the connection went away.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pymssql

from enquiry_sync.exceptions import ConfigurationError, IntegrityError

# Configure logging
logger = logging.getLogger(__name__)

PLACEHOLDER = "?"

_OUTPUT_CLAUSE = re.compile(r"\bOUTPUT\s+(INSERTED|DELETED)\.", re.IGNORECASE)

# SQL Server and DB-Library error numbers that mean the connection is gone:
# timeouts, read/write failures, unexpected EOF, dead process, login failure,
# and the socket-level forcibly closed / reset / network name errors.
CONNECTION_ERROR_NUMBERS = frozenset(
    {20003, 20004, 20006, 20009, 20017, 20047, 18456, 10053, 10054, 233, 121, 64}
)


class ErrorKind(Enum):
    """Structured classification of a failed execution."""

    CONNECTION = "connection"
    INTEGRITY = "integrity"
    QUERY = "query"


@dataclass(frozen=True)
class DatabaseProfile:
    """Immutable description of a logical connection target."""

    server: str
    port: int
    user: str
    password: str = field(repr=False)
    database: str
    timeout: int = 60

    def with_database(self, database: str) -> "DatabaseProfile":
        return replace(self, database=database)


class ConnectionHandle:
    """A live driver connection and the profile it was opened with."""

    def __init__(self, connection: Any, profile: DatabaseProfile):
        self.connection = connection
        self.profile = profile
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.connection.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing connection: {e}")

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<ConnectionHandle {self.profile.server}/{self.profile.database} {state}>"


def translate_placeholders(statement: str) -> Tuple[str, int]:
    """Replace each ``?`` marker, left to right, with ``%(pN)s``.

    Literal ``%`` characters are doubled so the driver's parameter
    substitution leaves them intact.

    Args:
        statement: SQL text using positional ``?`` markers

    Returns:
        Tuple[str, int]: The converted statement and the number of markers
    """
    parts = [part.replace("%", "%%") for part in statement.split(PLACEHOLDER)]
    converted = parts[0]
    for index, part in enumerate(parts[1:], start=1):
        converted += f"%(p{index})s" + part
    return converted, len(parts) - 1


def bind_parameters(values: Sequence[Any]) -> Dict[str, Any]:
    """Map positional values onto the names produced by ``translate_placeholders``."""
    return {f"p{index}": value for index, value in enumerate(values, start=1)}


def _error_number(exc: BaseException) -> Optional[int]:
    number = getattr(exc, "number", None)
    if isinstance(number, int):
        return number
    for arg in exc.args:
        if isinstance(arg, int):
            return arg
        if isinstance(arg, tuple) and arg and isinstance(arg[0], int):
            return arg[0]
    return None


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify an execution failure by exception type and server error number."""
    if isinstance(exc, IntegrityError):
        return ErrorKind.INTEGRITY
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorKind.CONNECTION
    if isinstance(exc, pymssql.InterfaceError):
        return ErrorKind.CONNECTION
    if _error_number(exc) in CONNECTION_ERROR_NUMBERS:
        return ErrorKind.CONNECTION
    return ErrorKind.QUERY


class DatabaseGateway:
    """Executes statements against SQL Server over one shared connection.

    Attributes:
        profile: Default connection profile
        connect_attempts: Attempts made to open a connection
        retry_delay: Delay between connection attempts in seconds
        secondary_database: Database name used by ``connect_secondary``
    """

    def __init__(
        self,
        profile: Optional[DatabaseProfile],
        connect_fn: Optional[Callable[..., Any]] = None,
        connect_attempts: int = 3,
        retry_delay: float = 5.0,
        secondary_database: Optional[str] = None,
    ):
        self.profile = profile
        self.connect_attempts = max(1, connect_attempts)
        self.retry_delay = retry_delay
        self.secondary_database = secondary_database
        self._connect_fn = connect_fn or pymssql.connect
        self._handle: Optional[ConnectionHandle] = None
        self._last_profile: Optional[DatabaseProfile] = None
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, mssql_settings: Any, **kwargs) -> "DatabaseGateway":
        """Create a gateway from ``MSSQLSettings``.

        Raises:
            ConfigurationError: If the connection settings are incomplete
        """
        if not mssql_settings.is_complete():
            raise ConfigurationError("MSSQL config is missing or incomplete.")
        return cls(
            mssql_settings.to_profile(),
            connect_attempts=mssql_settings.connect_attempts,
            retry_delay=mssql_settings.retry_delay,
            secondary_database=mssql_settings.secondary_database,
            **kwargs,
        )

    def connect(
        self, profile: Optional[DatabaseProfile] = None, database: Optional[str] = None
    ) -> ConnectionHandle:
        """Return the shared handle for ``profile``, opening it if needed.

        A request for a different profile than the cached one closes the
        cached handle and opens a fresh connection.

        Args:
            profile: Profile to connect with (defaults to the gateway profile)
            database: Database name overriding the profile's database

        Returns:
            ConnectionHandle: The shared open handle

        Raises:
            ConfigurationError: If no profile is configured
            ConnectionError: If the server cannot be reached
        """
        profile = profile or self.profile
        if profile is None:
            raise ConfigurationError("MSSQL config is missing")
        if database:
            profile = profile.with_database(database)

        with self._lock:
            if (
                self._handle is not None
                and not self._handle.closed
                and self._handle.profile == profile
            ):
                return self._handle

            self._discard()
            self._last_profile = profile
            self._handle = self._open(profile)
            return self._handle

    def connect_secondary(self) -> ConnectionHandle:
        """Connect to the configured secondary database."""
        if not self.secondary_database:
            raise ConfigurationError("No secondary database configured")
        return self.connect(database=self.secondary_database)

    def _open(self, profile: DatabaseProfile) -> ConnectionHandle:
        attempt = 0
        while True:
            attempt += 1
            try:
                connection = self._connect_fn(
                    server=profile.server,
                    port=int(profile.port),
                    user=profile.user,
                    password=profile.password,
                    database=profile.database,
                    autocommit=True,
                    timeout=profile.timeout,
                    login_timeout=profile.timeout,
                )
                logger.info(f"Connected to MSSQL: {profile.server}/{profile.database}")
                return ConnectionHandle(connection, profile)
            except Exception as e:
                logger.warning(
                    f"Connection attempt {attempt}/{self.connect_attempts} to "
                    f"{profile.server}/{profile.database} failed: {e}"
                )
                if attempt >= self.connect_attempts:
                    raise ConnectionError(
                        f"Failed to connect to SQL Server after {attempt} attempts: {e}"
                    ) from e
                time.sleep(self.retry_delay)

    def _discard(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def _reconnect(self, failed: ConnectionHandle) -> ConnectionHandle:
        with self._lock:
            current = self._handle
            if current is not None and current is not failed and not current.closed:
                # Another caller already replaced the handle.
                return current
            self._discard()
            self._handle = self._open(self._last_profile or failed.profile)
            return self._handle

    def execute(
        self,
        handle: ConnectionHandle,
        statement: str,
        binds: Sequence[Any] = (),
        allow_retry: bool = True,
    ) -> List[Dict[str, Any]]:
        """Execute a statement with positional ``?`` markers.

        Args:
            handle: Handle returned by ``connect``
            statement: SQL text with one ``?`` per bound value
            binds: Values bound to the markers, in order
            allow_retry: Reconnect and retry once on a connection failure

        Returns:
            List[Dict[str, Any]]: Result rows keyed by column name

        Raises:
            ValueError: If the marker and value counts differ
            IntegrityError: If an OUTPUT clause returned no rows
        """
        converted, marker_count = translate_placeholders(statement)
        values = list(binds or ())
        if marker_count != len(values):
            raise ValueError(
                f"Statement has {marker_count} placeholders but {len(values)} values were bound"
            )
        if values:
            params = bind_parameters(values)
        else:
            # pymssql only substitutes when parameters are given
            converted, params = statement, None

        with self._lock:
            if handle.closed and self._handle is not None and not self._handle.closed:
                handle = self._handle
            try:
                rows = self._run(handle, converted, params)
            except Exception as e:
                kind = classify_error(e)
                logger.error(f"Error executing query ({kind.value}): {e}")
                if kind is ErrorKind.CONNECTION and allow_retry:
                    logger.warning("MSSQL connection issue detected. Reconnecting and retrying...")
                    handle = self._reconnect(handle)
                    return self.execute(handle, statement, binds, allow_retry=False)
                raise

        logger.debug(f"Query executed successfully: {converted}")
        return rows

    @staticmethod
    def _run(
        handle: ConnectionHandle, converted: str, params: Optional[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        if handle.closed:
            raise ConnectionError("Connection is closed")
        cursor = handle.connection.cursor(as_dict=True)
        try:
            cursor.execute(converted, params)
            rows = list(cursor.fetchall()) if cursor.description else []
        finally:
            cursor.close()

        if _OUTPUT_CLAUSE.search(converted) and not rows:
            raise IntegrityError(
                "Query used OUTPUT INSERTED but returned no rows "
                "(check identity column / OUTPUT clause)."
            )
        return rows

    def close(self) -> None:
        """Close the shared connection."""
        with self._lock:
            self._discard()
