"""Service Management fakes for testing.

Provides in-memory stand-ins for the pieces of the client that talk to the
outside world, so that profile, channel and operation-tracking logic can be
tested without network access or a real certificate store.

Usage:
    from sm_mock import MockServiceManagementChannel, RecordingReporter

    channel = MockServiceManagementChannel(statuses=["InProgress", "Succeeded"])
    controller = OperationLifecycleController(channel, SUBSCRIPTION_ID, RecordingReporter(), sleep=lambda _: None)
    controller.wait_for_operation("Create service")
    assert channel.status_call_count == 2
"""

from .certificates import MockCredentialResolver, make_pkcs12
from .channel import MockServiceManagementChannel
from .reporting import RecordingReporter
from .responses import FakeHttpResponse, error_xml, make_http_error, operation_xml, publish_settings_xml
from .transport import CannedAdapter, CannedResponse, canned_session

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"
OTHER_SUBSCRIPTION_ID = "87654321-4321-4321-4321-210987654321"

__all__ = [
    "CannedAdapter",
    "CannedResponse",
    "FakeHttpResponse",
    "MockCredentialResolver",
    "MockServiceManagementChannel",
    "OTHER_SUBSCRIPTION_ID",
    "RecordingReporter",
    "SUBSCRIPTION_ID",
    "canned_session",
    "error_xml",
    "make_http_error",
    "make_pkcs12",
    "operation_xml",
    "publish_settings_xml",
]
