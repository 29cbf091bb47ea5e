"""
Tests for the paramiko-backed transfer client.
"""

import socket
import stat
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from enquiry_sync.core.transfer_client import TransferClient
from enquiry_sync.exceptions import ConfigurationError, TransferCancelledError


@pytest.fixture
def sftp():
    """Patch the transport and SFTP session, yielding the mock session."""
    session = MagicMock()
    with patch(
        "enquiry_sync.core.transfer_client.socket.create_connection"
    ) as create_connection, patch(
        "enquiry_sync.core.transfer_client.paramiko.Transport"
    ) as transport_cls, patch(
        "enquiry_sync.core.transfer_client.paramiko.SFTPClient.from_transport",
        return_value=session,
    ):
        session.create_connection = create_connection
        session.transport_cls = transport_cls
        session.transport = transport_cls.return_value
        yield session


def connected_client():
    client = TransferClient("sftp.example.com", "dolphin", password="secret")
    client.connect()
    return client


def remote_file(*chunks):
    handle = MagicMock()
    handle.read.side_effect = list(chunks) + [b""]
    return handle


class TestTransferClient:
    """Test cases for TransferClient."""

    def test_connect_uses_password(self, sftp):
        client = connected_client()

        sftp.transport.connect.assert_called_once_with(
            username="dolphin", password="secret", pkey=None
        )
        assert sftp.transport.banner_timeout == 30.0
        sftp.create_connection.assert_called_once_with(("sftp.example.com", 22), timeout=30.0)
        sftp.transport_cls.assert_called_once_with(sftp.create_connection.return_value)

        client.connect()
        assert sftp.transport.connect.call_count == 1

    def test_unreachable_host_raises_connection_error(self, sftp):
        sftp.create_connection.side_effect = socket.timeout("timed out")
        client = TransferClient("sftp.example.com", "dolphin", password="secret", timeout=1)

        with pytest.raises(ConnectionError):
            client.connect()

        sftp.transport_cls.assert_not_called()

    def test_connect_failure_is_wrapped(self, sftp):
        sftp.transport.connect.side_effect = paramiko.SSHException("Authentication failed")
        client = TransferClient("sftp.example.com", "dolphin", password="wrong")

        with pytest.raises(ConnectionError):
            client.connect()

        sftp.transport.close.assert_called_once()

    def test_list_maps_entry_kinds(self, sftp):
        sftp.listdir_attr.return_value = [
            SimpleNamespace(filename="A.bak", st_mode=stat.S_IFREG | 0o644, st_size=100, st_mtime=1),
            SimpleNamespace(filename="old", st_mode=stat.S_IFDIR | 0o755, st_size=0, st_mtime=2),
            SimpleNamespace(filename="link", st_mode=None, st_size=None, st_mtime=None),
        ]

        entries = connected_client().list("/Database_Download")

        assert [(e.name, e.kind, e.size) for e in entries] == [
            ("A.bak", "file", 100),
            ("old", "directory", 0),
            ("link", "other", 0),
        ]
        assert entries[0].is_file

    def test_get_streams_chunks(self, sftp, tmp_path):
        sftp.open.return_value.__enter__.return_value = remote_file(b"abc", b"def")
        local_path = tmp_path / "A.bak"

        connected_client().get("/Database_Download/A.bak", str(local_path))

        assert local_path.read_bytes() == b"abcdef"
        sftp.open.assert_called_once_with("/Database_Download/A.bak", "rb")

    def test_get_stops_when_cancelled(self, sftp, tmp_path):
        sftp.open.return_value.__enter__.return_value = remote_file(b"abc")
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(TransferCancelledError):
            connected_client().get("/x/A.bak", str(tmp_path / "A.bak"), cancel_event)

    def test_operations_require_connection(self):
        client = TransferClient("sftp.example.com", "dolphin", password="secret")

        with pytest.raises(ConnectionError):
            client.list("/")

    def test_abort_and_end_close_transport(self, sftp):
        client = connected_client()

        client.abort()
        client.end()

        assert sftp.transport.close.call_count == 2
        sftp.close.assert_called_once()
        client.end()

    def test_from_settings_requires_complete_settings(self):
        with pytest.raises(ConfigurationError):
            TransferClient.from_settings(SimpleNamespace(is_complete=lambda: False))
