"""Authenticated Service Management channel and channel providers.

A channel is an azure-core PipelineClient bound to one endpoint, one client
certificate and the configured transport limits. Construction never touches
the network; the pipeline is built on first use. Every request passes a
message inspector that tags it with a client request id and logs both
directions at DEBUG.

Channels can open operation scopes: while a scope is open, the headers of
the last response are kept on the scope, so the operation tracking id of a
mutating call can be read after the call returns.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from azure.core import PipelineClient
from azure.core.exceptions import (
    ClientAuthenticationError,
    DecodeError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    map_error,
)
from azure.core.pipeline import PipelineRequest, PipelineResponse
from azure.core.pipeline.policies import HeadersPolicy, RetryPolicy, SansIOHTTPPolicy, UserAgentPolicy
from azure.core.pipeline.transport import RequestsTransport
from azure.core.rest import HttpRequest, HttpResponse
from defusedxml import DefusedXmlException, ElementTree
from requests.structures import CaseInsensitiveDict

from . import __version__
from .certificates import Certificate
from .config import BindingConfig, ConfigurationError
from .faults import SM_NAMESPACE, parse_error_payload
from .models import (
    API_VERSION_HEADER,
    CLIENT_REQUEST_ID_HEADER,
    OPERATION_TRACKING_ID_HEADER,
    SERVICE_MANAGEMENT_API_VERSION,
    Operation,
    ServiceManagementError,
    Subscription,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_AGENT = f"smclient/{__version__}"

ERROR_MAP = {
    401: ClientAuthenticationError,
    403: ClientAuthenticationError,
    404: ResourceNotFoundError,
    409: ResourceExistsError,
}

NONE_MARKER = "<NONE>"


class MessageInspectorPolicy(SansIOHTTPPolicy):
    """Tags requests with a client request id and logs requests and responses.

    Responses whose declared length exceeds the binding limit are rejected.
    """

    def __init__(self, max_response_bytes: int) -> None:
        super().__init__()
        self.max_response_bytes = max_response_bytes

    def on_request(self, request: PipelineRequest) -> None:
        http_request = request.http_request
        http_request.headers.setdefault(CLIENT_REQUEST_ID_HEADER, str(uuid.uuid4()))
        logger.debug(
            "REQUEST, %s, %s",
            http_request.method,
            http_request.url,
            extra={"client_request_id": http_request.headers[CLIENT_REQUEST_ID_HEADER]},
        )

    def on_response(self, request: PipelineRequest, response: PipelineResponse) -> None:
        http_response = response.http_response
        request_id = http_response.headers.get(OPERATION_TRACKING_ID_HEADER)

        error: ServiceManagementError | None = None
        if http_response.status_code >= 400:
            try:
                error = parse_error_payload(http_response.read())
            except Exception as e:  # body may be streamed or undecodable
                logger.debug("Could not read error response body", extra={"error": str(e)})

        logger.debug(
            "RESPONSE, %s, %s, %s, %s",
            http_response.status_code,
            (error.code if error else None) or NONE_MARKER,
            (error.message if error else None) or NONE_MARKER,
            request_id,
        )

        content_length = http_response.headers.get("Content-Length")
        if content_length is not None and content_length.isdigit() and int(content_length) > self.max_response_bytes:
            raise HttpResponseError(
                message=f"Response of {content_length} bytes exceeds the limit of {self.max_response_bytes} bytes",
                response=http_response,
            )


@dataclass(eq=False)
class OperationScope:
    """Correlation scope: remembers the headers of the last response sent within it."""

    response_headers: MutableMapping[str, str] = field(default_factory=CaseInsensitiveDict)

    @property
    def operation_id(self) -> str | None:
        return self.response_headers.get(OPERATION_TRACKING_ID_HEADER)


def parse_operation(body: str | bytes) -> Operation:
    """Parse an ``<Operation>`` status document.

    Raises:
        DecodeError: If the body is not a well-formed Operation document.
    """
    try:
        root = ElementTree.fromstring(body)
    except (ElementTree.ParseError, DefusedXmlException) as e:
        raise DecodeError(f"Invalid operation status document: {e}") from e

    if root.tag.rsplit("}", 1)[-1] != "Operation":
        raise DecodeError(f"Unexpected operation status root element: {root.tag}")

    def find(parent, tag: str):
        node = parent.find(f"{{{SM_NAMESPACE}}}{tag}")
        return node if node is not None else parent.find(tag)

    def text(parent, tag: str) -> str | None:
        node = find(parent, tag)
        return node.text.strip() if node is not None and node.text else None

    error = None
    error_node = find(root, "Error")
    if error_node is not None:
        error = ServiceManagementError(code=text(error_node, "Code"), message=text(error_node, "Message"))

    http_status = text(root, "HttpStatusCode")
    return Operation(
        operation_id=text(root, "ID") or "",
        status=text(root, "Status") or "",
        http_status_code=int(http_status) if http_status and http_status.isdigit() else None,
        error=error,
    )


class ServiceManagementChannel:
    """Certificate-authenticated session against one management endpoint."""

    def __init__(
        self,
        endpoint: str,
        certificate: Certificate,
        subscription_id: str,
        binding: BindingConfig | None = None,
        transport: Any | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/") + "/"
        self.certificate = certificate
        self.subscription_id = subscription_id
        self.binding = binding or BindingConfig()
        self._transport = transport
        self._client: PipelineClient | None = None
        self._scopes: list[OperationScope] = []
        self._last_response_headers: MutableMapping[str, str] = CaseInsensitiveDict()

    def _build_client(self) -> PipelineClient:
        transport = self._transport or RequestsTransport(
            connection_cert=str(self.certificate.path) if self.certificate.path else None,
            connection_timeout=self.binding.connection_timeout_seconds,
            read_timeout=self.binding.read_timeout_seconds,
        )
        policies = [
            HeadersPolicy(base_headers={API_VERSION_HEADER: SERVICE_MANAGEMENT_API_VERSION}),
            UserAgentPolicy(base_user_agent=USER_AGENT),
            RetryPolicy.no_retries(),
            MessageInspectorPolicy(self.binding.max_response_bytes),
        ]
        logger.debug(
            "Creating management channel",
            extra={"endpoint": self.endpoint, "thumbprint": self.certificate.thumbprint},
        )
        return PipelineClient(base_url=self.endpoint, policies=policies, transport=transport)

    @property
    def client(self) -> PipelineClient:
        if self._client is None:
            self._client = self._build_client()
        return self._client

    def url_for(self, path: str, subscription_id: str | None = None) -> str:
        return f"{self.endpoint}{subscription_id or self.subscription_id}/{path.lstrip('/')}"

    def send(
        self,
        method: str,
        path: str,
        content: str | bytes | None = None,
        headers: dict[str, str] | None = None,
        subscription_id: str | None = None,
    ) -> HttpResponse:
        """Send a request relative to the subscription root.

        Raises:
            ClientAuthenticationError: On HTTP 401 or 403.
            ResourceNotFoundError: On HTTP 404.
            ResourceExistsError: On HTTP 409.
            HttpResponseError: On any other error status.
            ServiceRequestError: If the endpoint cannot be reached.
        """
        request_headers = {"Content-Type": "application/xml"} if content is not None else {}
        request_headers.update(headers or {})
        request = HttpRequest(method.upper(), self.url_for(path, subscription_id), headers=request_headers, content=content)

        response = self.client.send_request(request)

        # failed requests issue no operation
        response_headers = CaseInsensitiveDict(response.headers if response.status_code < 400 else {})
        self._last_response_headers = response_headers
        if self._scopes:
            self._scopes[-1].response_headers = response_headers

        if response.status_code >= 400:
            map_error(status_code=response.status_code, response=response, error_map=ERROR_MAP)
            raise HttpResponseError(response=response)
        return response

    @contextmanager
    def operation_scope(self) -> Iterator[OperationScope]:
        scope = OperationScope()
        self._scopes.append(scope)
        try:
            yield scope
        finally:
            self._scopes.remove(scope)

    @property
    def last_operation_id(self) -> str | None:
        """Tracking id of the last response, from the innermost open scope if any."""
        if self._scopes:
            return self._scopes[-1].operation_id
        return self._last_response_headers.get(OPERATION_TRACKING_ID_HEADER)

    def get_operation_status(self, subscription_id: str, operation_id: str) -> Operation:
        response = self.send("GET", f"operations/{operation_id}", subscription_id=subscription_id)
        return parse_operation(response.text())

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def invoke_in_scope(channel: object, action: Callable[[], T]) -> T:
    """Run action inside the channel's operation scope when it has one."""
    open_scope = getattr(channel, "operation_scope", None)
    if open_scope is None:
        return action()
    with open_scope():
        return action()


class ChannelProvider(Protocol):
    def create_channel(self, subscription: Subscription | None = None) -> Any: ...


class ServiceManagementChannelFactory:
    """Builds a new channel per call from the profile's view of a subscription."""

    def __init__(self, profile: Any, binding: BindingConfig | None = None, transport: Any | None = None) -> None:
        self.profile = profile
        self.binding = binding or BindingConfig()
        self.transport = transport

    def create_channel(self, subscription: Subscription | None = None) -> ServiceManagementChannel:
        """Create a channel for the subscription (default: the current one).

        Raises:
            ConfigurationError: If there is no subscription, it has no usable
                certificate or id, or no endpoint can be resolved.
        """
        subscription = subscription or self.profile.current_subscription
        if subscription is None:
            raise ConfigurationError(
                "The current subscription has not been set. Import a publish settings "
                "file or select a subscription first."
            )

        if not subscription.certificate_thumbprint:
            raise ConfigurationError(f"Subscription '{subscription.name}' has no management certificate")
        certificate = self.profile.resolve_certificate(subscription)
        if certificate is None:
            raise ConfigurationError(
                f"Management certificate {subscription.certificate_thumbprint} for subscription "
                f"'{subscription.name}' was not found in the certificate store"
            )

        if not subscription.subscription_id:
            raise ConfigurationError(f"Subscription '{subscription.name}' has no subscription id")

        endpoint = self.profile.service_endpoint_for(subscription)
        if not endpoint:
            raise ConfigurationError(
                f"No service endpoint for subscription '{subscription.name}' or the current environment"
            )

        return ServiceManagementChannel(
            endpoint=endpoint,
            certificate=certificate,
            subscription_id=subscription.subscription_id,
            binding=self.binding,
            transport=self.transport,
        )


class FixedChannelProvider:
    """Returns the same channel object on every call."""

    def __init__(self, channel: Any) -> None:
        self.channel = channel

    def create_channel(self, subscription: Subscription | None = None) -> Any:
        return self.channel
