"""Testing utilities for ATP runtime integrations.

Modules:
    mocks: MockHost, an httpx.MockTransport-backed host with route
           registration and request recording.
    fixtures: Pytest fixtures (sample_manifest_document, mock_host,
              runtime_config) and the sample manifest document.

Example:
    >>> from atp.testing import MockHost, json_response
    >>> pytest_plugins = ["atp.testing.fixtures"]
"""

from atp.testing.mocks import MockHost, combined_transport, error_response, json_response

__all__ = [
    "MockHost",
    "combined_transport",
    "error_response",
    "json_response",
]
