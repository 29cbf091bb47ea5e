"""
SFTP transfer client.

Wraps paramiko behind the four operations the sync engine consumes
(connect, list, get, end) plus ``abort`` for cancelling a transfer that
is blocked on the network.
"""

import logging
import socket
import stat
import threading
from dataclasses import dataclass
from typing import Any, List, Optional

import paramiko

from enquiry_sync.exceptions import ConfigurationError, TransferCancelledError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32768


@dataclass(frozen=True)
class RemoteEntry:
    """A single entry from a remote directory listing."""

    name: str
    kind: str  # "file", "directory" or "other"
    size: int
    modified: Optional[int] = None

    @property
    def is_file(self) -> bool:
        return self.kind == "file"


def _entry_kind(mode: Optional[int]) -> str:
    if mode is None:
        return "other"
    if stat.S_ISREG(mode):
        return "file"
    if stat.S_ISDIR(mode):
        return "directory"
    return "other"


class TransferClient:
    """Minimal SFTP client for listing and downloading remote files.

    Attributes:
        host: SFTP hostname
        port: SFTP port
        username: Login name
        password: Login password
        private_key_path: Optional path to a private key file
        timeout: Connect, banner and auth timeout in seconds
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: Optional[str] = None,
        port: int = 22,
        private_key_path: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key_path
        self.timeout = timeout
        self._transport: Optional[paramiko.Transport] = None
        self._client: Optional[paramiko.SFTPClient] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, sftp_settings: Any) -> "TransferClient":
        """Create a client from ``SFTPSettings``.

        Raises:
            ConfigurationError: If host, username or credentials are missing
        """
        if not sftp_settings.is_complete():
            raise ConfigurationError("SFTP config is missing or incomplete.")
        password = sftp_settings.password
        return cls(
            host=sftp_settings.host,
            port=sftp_settings.port,
            username=sftp_settings.username,
            password=password.get_secret_value() if password else None,
            private_key_path=sftp_settings.private_key_path,
            timeout=sftp_settings.timeout,
        )

    def _load_private_key(self) -> Optional[paramiko.PKey]:
        if not self.private_key_path:
            return None
        # Try common key types; paramiko will raise if incompatible.
        try:
            return paramiko.RSAKey.from_private_key_file(
                self.private_key_path, password=self.password
            )
        except paramiko.SSHException:
            return paramiko.Ed25519Key.from_private_key_file(
                self.private_key_path, password=self.password
            )

    def connect(self) -> None:
        """Open the SSH transport and SFTP session.

        Raises:
            ConnectionError: If the server cannot be reached or rejects the login
        """
        if self._client is not None:
            return

        logger.info(f"Connecting to SFTP: {self.host}:{self.port} as {self.username}")
        sock = None
        transport = None
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
            transport = paramiko.Transport(sock)
            transport.banner_timeout = self.timeout
            transport.auth_timeout = self.timeout
            pkey = self._load_private_key()
            transport.connect(
                username=self.username,
                password=None if pkey else self.password,
                pkey=pkey,
            )
            client = paramiko.SFTPClient.from_transport(transport)
        except (paramiko.SSHException, OSError) as e:
            if transport is not None:
                transport.close()
            elif sock is not None:
                sock.close()
            raise ConnectionError(f"SFTP connection to {self.host} failed: {e}") from e

        with self._lock:
            self._transport = transport
            self._client = client
        logger.info("SFTP connection established")

    def _require_client(self) -> paramiko.SFTPClient:
        if self._client is None:
            raise ConnectionError("SFTP client is not connected")
        return self._client

    def list(self, remote_dir: str) -> List[RemoteEntry]:
        """List a remote directory.

        Args:
            remote_dir: Absolute remote directory path

        Returns:
            List[RemoteEntry]: Entries in server order
        """
        client = self._require_client()
        entries = []
        for attr in client.listdir_attr(remote_dir):
            entries.append(
                RemoteEntry(
                    name=attr.filename,
                    kind=_entry_kind(attr.st_mode),
                    size=attr.st_size or 0,
                    modified=attr.st_mtime,
                )
            )
        return entries

    def get(
        self,
        remote_path: str,
        local_path: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Download ``remote_path`` into ``local_path``.

        The file is streamed in chunks; the cancel event is checked between
        chunks. A read blocked on the network is ended by ``abort``.

        Raises:
            TransferCancelledError: If the cancel event was set mid-transfer
        """
        client = self._require_client()
        with client.open(remote_path, "rb") as remote_file:
            remote_file.prefetch()
            with open(local_path, "wb") as local_file:
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        raise TransferCancelledError(f"Transfer of {remote_path} cancelled")
                    chunk = remote_file.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    local_file.write(chunk)

    def abort(self) -> None:
        """Tear down the transport so any in-flight read fails immediately."""
        with self._lock:
            transport = self._transport
        if transport is not None:
            logger.warning(f"Aborting SFTP transport to {self.host}")
            transport.close()

    def end(self) -> None:
        """Close the SFTP session and the underlying transport."""
        with self._lock:
            client, transport = self._client, self._transport
            self._client = None
            self._transport = None
        try:
            if client is not None:
                client.close()
        finally:
            if transport is not None:
                transport.close()
