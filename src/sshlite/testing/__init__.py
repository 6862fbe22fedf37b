"""
Testing utilities for sshlite.

Provides MockSSHServer for integration tests without Docker or network access.
"""
from sshlite.testing.mock_server import MockServerConfig, MockSSHServer

__all__ = ["MockSSHServer", "MockServerConfig"]
