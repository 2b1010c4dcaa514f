"""Pytest fixtures for Flick tests."""

import pytest

from flick.connection import Connection
from flick.models import EngineSettings, ServerProfile

from .mocks.transport_mock import MockTransport, create_mock_connection, create_mock_profile


@pytest.fixture
def fast_settings() -> EngineSettings:
    """Settings that report every chunk and abort cancelled work quickly."""
    return EngineSettings(
        max_concurrent_transfers=1,
        progress_byte_threshold=1,
        progress_interval=0.0,
        cancel_grace=0.05,
        chunk_size=1024,
        list_timeout=1.0,
        auth_timeout=1.0,
    )


@pytest.fixture
def mock_profile() -> ServerProfile:
    """Provide a mock server profile."""
    return create_mock_profile()


@pytest.fixture
def mock_transport(fast_settings: EngineSettings) -> MockTransport:
    """Provide an in-memory transport with a few remote files."""
    return MockTransport(
        settings=fast_settings,
        files={
            "/data/file1.txt": b"a" * 1024,
            "/data/file2.txt": b"b" * 2048,
            "/data/subdir/nested.txt": b"c" * 512,
        },
    )


@pytest.fixture
def mock_connection(mock_transport: MockTransport) -> Connection:
    """Provide a Connection bound to the mock transport."""
    return create_mock_connection(mock_transport)
