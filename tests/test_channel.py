"""Tests for the management channel, its inspector and channel providers."""

import logging
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from azure.core import PipelineClient
from azure.core.exceptions import (
    ClientAuthenticationError,
    DecodeError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.core.pipeline.transport import RequestsTransport
from sm_mock import (
    SUBSCRIPTION_ID,
    CannedAdapter,
    CannedResponse,
    FakeHttpResponse,
    MockCredentialResolver,
    MockServiceManagementChannel,
    canned_session,
    error_xml,
    operation_xml,
)

from smclient.certificates import Certificate
from smclient.channel import (
    FixedChannelProvider,
    MessageInspectorPolicy,
    ServiceManagementChannel,
    ServiceManagementChannelFactory,
    invoke_in_scope,
    parse_operation,
)
from smclient.config import BindingConfig, ConfigurationError
from smclient.environments import Environment
from smclient.models import SERVICE_MANAGEMENT_API_VERSION, Subscription
from smclient.profile import Profile

THUMBPRINT = "AB" * 20


def make_channel(endpoint: str = "https://management.example.net") -> ServiceManagementChannel:
    certificate = Certificate(thumbprint=THUMBPRINT, subject="CN=test", path=Path("/tmp/cert.pem"))
    channel = ServiceManagementChannel(endpoint, certificate, SUBSCRIPTION_ID)
    channel._client = MagicMock()
    return channel


def respond(channel: ServiceManagementChannel, *responses: FakeHttpResponse) -> None:
    channel._client.send_request.side_effect = list(responses)


class TestServiceManagementChannel:
    """Tests for ServiceManagementChannel."""

    def test_construction_is_lazy(self) -> None:
        """Test that no pipeline is built until the channel is used."""
        certificate = Certificate(thumbprint=THUMBPRINT, subject="CN=test", path=Path("/tmp/cert.pem"))
        channel = ServiceManagementChannel("https://m/", certificate, SUBSCRIPTION_ID, BindingConfig())

        assert channel._client is None
        assert isinstance(channel.client, PipelineClient)
        assert channel.client is channel.client

    def test_send_builds_subscription_url(self) -> None:
        """Test that paths are relative to the subscription root."""
        channel = make_channel()
        respond(channel, FakeHttpResponse(202, headers={"x-ms-request-id": "op-1"}))

        response = channel.send("post", "/services/hostedservices", content="<CreateHostedService />")

        request = channel._client.send_request.call_args.args[0]
        assert request.method == "POST"
        assert request.url == f"https://management.example.net/{SUBSCRIPTION_ID}/services/hostedservices"
        assert request.headers["Content-Type"] == "application/xml"
        assert response.status_code == 202
        assert channel.last_operation_id == "op-1"

    @pytest.mark.parametrize(
        ("status", "error_cls"),
        [
            (401, ClientAuthenticationError),
            (403, ClientAuthenticationError),
            (404, ResourceNotFoundError),
            (409, ResourceExistsError),
            (500, HttpResponseError),
        ],
    )
    def test_error_status_mapping(self, status: int, error_cls: type[Exception]) -> None:
        """Test that error statuses raise the matching azure-core error."""
        channel = make_channel()
        respond(channel, FakeHttpResponse(status, body=error_xml("Err", "Bad"), headers={"x-ms-request-id": "r"}))

        with pytest.raises(error_cls) as exc_info:
            channel.send("GET", "services/hostedservices")

        assert exc_info.value.response.status_code == status

    def test_failed_request_leaves_no_tracking_id(self) -> None:
        """Test that an error response does not look like an issued operation."""
        channel = make_channel()
        respond(
            channel,
            FakeHttpResponse(202, headers={"x-ms-request-id": "op-1"}),
            FakeHttpResponse(403, headers={"x-ms-request-id": "r-2"}),
        )

        channel.send("POST", "a")
        with pytest.raises(ClientAuthenticationError):
            channel.send("POST", "b")

        assert channel.last_operation_id is None

    def test_operation_scope_keeps_response_headers(self) -> None:
        """Test that a scope records the tracking id of calls made within it."""
        channel = make_channel()
        respond(
            channel,
            FakeHttpResponse(202, headers={"x-ms-request-id": "outer"}),
            FakeHttpResponse(202, headers={"x-ms-request-id": "inner"}),
        )

        with channel.operation_scope() as outer:
            channel.send("POST", "a")
            with channel.operation_scope() as inner:
                assert channel.last_operation_id is None
                channel.send("POST", "b")
                assert channel.last_operation_id == "inner"
            assert channel.last_operation_id == "outer"

        assert outer.operation_id == "outer"
        assert inner.operation_id == "inner"
        assert channel._scopes == []

    def test_scope_released_on_error(self) -> None:
        """Test that a scope is released when the body raises."""
        channel = make_channel()

        with pytest.raises(RuntimeError):
            with channel.operation_scope():
                raise RuntimeError("boom")

        assert channel._scopes == []

    def test_get_operation_status(self) -> None:
        """Test polling the operation status endpoint."""
        channel = make_channel()
        respond(channel, FakeHttpResponse(200, body=operation_xml("op-7", "InProgress")))

        operation = channel.get_operation_status(SUBSCRIPTION_ID, "op-7")

        request = channel._client.send_request.call_args.args[0]
        assert request.method == "GET"
        assert request.url.endswith(f"/{SUBSCRIPTION_ID}/operations/op-7")
        assert operation.operation_id == "op-7"
        assert operation.status == "InProgress"
        assert operation.http_status_code == 200

    def test_close(self) -> None:
        """Test that close releases the pipeline."""
        channel = make_channel()
        client = channel._client

        channel.close()

        client.close.assert_called_once_with()
        assert channel._client is None


def make_transport_channel(*responses: CannedResponse) -> tuple[ServiceManagementChannel, CannedAdapter]:
    session, adapter = canned_session(*responses)
    certificate = Certificate(thumbprint=THUMBPRINT, subject="CN=test", path=Path("/tmp/cert.pem"))
    channel = ServiceManagementChannel(
        "https://management.example.net",
        certificate,
        SUBSCRIPTION_ID,
        transport=RequestsTransport(session=session, session_owner=False),
    )
    return channel, adapter


class TestChannelOverTransport:
    """Tests that drive the full pipeline through a requests transport."""

    def test_tracking_id_header_in_any_case(self) -> None:
        """Test that the tracking id is found whatever the header's case."""
        channel, _ = make_transport_channel(
            CannedResponse(202, headers={"X-Ms-Request-Id": "op-1"}, reason="Accepted"),
            CannedResponse(202, headers={"X-MS-REQUEST-ID": "op-2"}, reason="Accepted"),
        )

        channel.send("POST", "services/hostedservices", content="<CreateHostedService />")
        assert channel.last_operation_id == "op-1"

        with channel.operation_scope() as scope:
            channel.send("POST", "services/hostedservices", content="<CreateHostedService />")
            assert channel.last_operation_id == "op-2"
        assert scope.operation_id == "op-2"

    def test_request_headers(self) -> None:
        """Test the headers every request carries on the wire."""
        channel, adapter = make_transport_channel(CannedResponse(200, body="<HostedServices />"))

        response = channel.send("GET", "services/hostedservices")

        (request,) = adapter.requests
        assert request.url == f"https://management.example.net/{SUBSCRIPTION_ID}/services/hostedservices"
        assert request.headers["x-ms-version"] == SERVICE_MANAGEMENT_API_VERSION
        assert request.headers["x-ms-client-request-id"]
        assert "smclient/" in request.headers["User-Agent"]
        assert response.text() == "<HostedServices />"

    def test_error_response_mapped_and_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a real error response is mapped and logged by the inspector."""
        channel, _ = make_transport_channel(
            CannedResponse(
                404,
                body=error_xml("ResourceNotFound", "No such service."),
                headers={"x-ms-request-id": "req-8"},
                reason="Not Found",
            )
        )

        with caplog.at_level(logging.DEBUG, logger="smclient.channel"):
            with pytest.raises(ResourceNotFoundError):
                channel.send("GET", "services/hostedservices/missing")

        assert "RESPONSE, 404, ResourceNotFound, No such service., req-8" in caplog.text
        assert channel.last_operation_id is None

    def test_operation_status_poll(self) -> None:
        """Test polling an operation status through the pipeline."""
        channel, adapter = make_transport_channel(CannedResponse(200, body=operation_xml("op-3", "Succeeded")))

        operation = channel.get_operation_status(SUBSCRIPTION_ID, "op-3")

        assert operation.succeeded is True
        assert adapter.requests[0].url.endswith(f"/{SUBSCRIPTION_ID}/operations/op-3")


class TestParseOperation:
    """Tests for operation status documents."""

    def test_failed_with_error(self) -> None:
        """Test parsing a Failed operation with its error."""
        operation = parse_operation(
            operation_xml("op-1", "Failed", 400, error_code="BadRequest", error_message="Invalid name")
        )

        assert operation.failed is True
        assert operation.error is not None
        assert operation.error.code == "BadRequest"
        assert operation.error.message == "Invalid name"

    def test_status_case_insensitive(self) -> None:
        """Test that terminal statuses are recognized in any case."""
        assert parse_operation(operation_xml("op-1", "succeeded")).is_terminal is True
        assert parse_operation(operation_xml("op-1", "FAILED")).failed is True
        assert parse_operation(operation_xml("op-1", "inprogress")).is_terminal is False

    def test_without_namespace(self) -> None:
        """Test parsing a document without the namespace."""
        operation = parse_operation("<Operation><ID>x</ID><Status>Succeeded</Status></Operation>")

        assert operation.succeeded is True

    @pytest.mark.parametrize("body", ["", "<Operation", "<Error />"])
    def test_malformed(self, body: str) -> None:
        """Test that malformed documents raise DecodeError."""
        with pytest.raises(DecodeError):
            parse_operation(body)


class TestMessageInspectorPolicy:
    """Tests for the diagnostic message inspector."""

    def test_adds_client_request_id(self) -> None:
        """Test that each request gets a client request id."""
        request = MagicMock()
        request.http_request.headers = {}

        MessageInspectorPolicy(1024).on_request(request)

        assert request.http_request.headers["x-ms-client-request-id"]

    def test_keeps_existing_client_request_id(self) -> None:
        """Test that a caller-provided client request id is kept."""
        request = MagicMock()
        request.http_request.headers = {"x-ms-client-request-id": "mine"}

        MessageInspectorPolicy(1024).on_request(request)

        assert request.http_request.headers["x-ms-client-request-id"] == "mine"

    def test_logs_error_response(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test the RESPONSE log line for an error response."""
        response = MagicMock()
        response.http_response = FakeHttpResponse(
            409, body=error_xml("ConflictError", "Busy"), headers={"x-ms-request-id": "req-3"}
        )

        with caplog.at_level(logging.DEBUG, logger="smclient.channel"):
            MessageInspectorPolicy(1024 * 1024).on_response(MagicMock(), response)

        assert "RESPONSE, 409, ConflictError, Busy, req-3" in caplog.text

    def test_logs_success_response(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test the RESPONSE log line for a success response."""
        response = MagicMock()
        response.http_response = FakeHttpResponse(200, headers={"x-ms-request-id": "req-4"})

        with caplog.at_level(logging.DEBUG, logger="smclient.channel"):
            MessageInspectorPolicy(1024 * 1024).on_response(MagicMock(), response)

        assert "RESPONSE, 200, <NONE>, <NONE>, req-4" in caplog.text

    def test_rejects_oversized_response(self) -> None:
        """Test that a response larger than the binding limit is refused."""
        response = MagicMock()
        response.http_response = FakeHttpResponse(200, headers={"Content-Length": "4096"})

        with pytest.raises(HttpResponseError, match="exceeds the limit"):
            MessageInspectorPolicy(1024).on_response(MagicMock(), response)


def test_invoke_in_scope_uses_channel_scope() -> None:
    """Test that an action runs inside the channel's scope, released on exit."""
    channel = MockServiceManagementChannel()

    result = invoke_in_scope(channel, lambda: channel.open_scopes)

    assert result == 1
    assert channel.scopes_opened == 1
    assert channel.open_scopes == 0


def test_invoke_in_scope_released_on_error() -> None:
    """Test that the scope is released when the action raises."""
    channel = MockServiceManagementChannel()

    def fail() -> None:
        raise ValueError("boom")

    with pytest.raises(ValueError):
        invoke_in_scope(channel, fail)

    assert channel.open_scopes == 0


def test_invoke_in_scope_without_scope_support() -> None:
    """Test that channels without scopes run the action unscoped."""
    assert invoke_in_scope(object(), lambda: 42) == 42


class TestServiceManagementChannelFactory:
    """Tests for channel construction from the profile."""

    @pytest.fixture
    def ready_profile(self, profile: Profile, credentials: MockCredentialResolver) -> Profile:
        credentials.add(THUMBPRINT)
        profile.add_subscription(
            Subscription(name="Prod", subscription_id=SUBSCRIPTION_ID, certificate_thumbprint=THUMBPRINT, is_default=True)
        )
        return profile

    def test_create_channel(self, ready_profile: Profile) -> None:
        """Test that a channel is bound to the endpoint, certificate and binding."""
        binding = BindingConfig(read_timeout_seconds=42)
        channel = ServiceManagementChannelFactory(ready_profile, binding).create_channel()

        assert channel.endpoint == "https://management.core.windows.net/"
        assert channel.certificate.thumbprint == THUMBPRINT
        assert channel.subscription_id == SUBSCRIPTION_ID
        assert channel.binding.read_timeout_seconds == 42
        assert channel._client is None

    def test_new_channel_per_call(self, ready_profile: Profile) -> None:
        """Test that the production factory never shares channels."""
        factory = ServiceManagementChannelFactory(ready_profile)

        assert factory.create_channel() is not factory.create_channel()

    def test_endpoint_override(self, ready_profile: Profile) -> None:
        """Test that a subscription endpoint override is used."""
        sub = ready_profile.get_subscription("Prod").model_copy(update={"service_endpoint": "https://own.example.net"})

        channel = ServiceManagementChannelFactory(ready_profile).create_channel(sub)

        assert channel.endpoint == "https://own.example.net/"

    def test_no_current_subscription(self, profile: Profile) -> None:
        """Test that a missing current subscription is a configuration error."""
        with pytest.raises(ConfigurationError, match="current subscription"):
            ServiceManagementChannelFactory(profile).create_channel()

    def test_no_certificate(self, profile: Profile) -> None:
        """Test that a subscription without a certificate is a configuration error."""
        sub = Subscription(name="Prod", subscription_id=SUBSCRIPTION_ID)

        with pytest.raises(ConfigurationError, match="certificate"):
            ServiceManagementChannelFactory(profile).create_channel(sub)

    def test_unresolvable_certificate(self, profile: Profile) -> None:
        """Test that a certificate missing from the store is a configuration error."""
        sub = Subscription(name="Prod", subscription_id=SUBSCRIPTION_ID, certificate_thumbprint="CD" * 20)

        with pytest.raises(ConfigurationError, match="not found"):
            ServiceManagementChannelFactory(profile).create_channel(sub)

    def test_empty_subscription_id(self, profile: Profile, credentials: MockCredentialResolver) -> None:
        """Test that an empty subscription id is a configuration error."""
        credentials.add(THUMBPRINT)
        sub = Subscription.model_construct(name="Prod", subscription_id="", certificate_thumbprint=THUMBPRINT)

        with pytest.raises(ConfigurationError, match="subscription id"):
            ServiceManagementChannelFactory(profile).create_channel(sub)

    def test_no_endpoint(self, ready_profile: Profile) -> None:
        """Test that an environment without an endpoint is a configuration error."""
        ready_profile.add_environment(Environment(name="Empty"))
        ready_profile.select_environment("Empty")

        with pytest.raises(ConfigurationError, match="No service endpoint"):
            ServiceManagementChannelFactory(ready_profile).create_channel()


def test_fixed_provider_returns_same_channel() -> None:
    """Test that the fixed provider returns the identical channel every time."""
    channel = MockServiceManagementChannel()
    provider = FixedChannelProvider(channel)

    assert provider.create_channel() is channel
    assert provider.create_channel() is provider.create_channel()
