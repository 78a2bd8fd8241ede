"""Fault classification and the fault-retry wrapper around remote calls.

Remote calls raise azure-core exceptions. A ClientAuthenticationError whose
response is HTTP 403 is the one fault turned into a user-facing report
("communication could not be established"); everything else is re-raised
unchanged. There is no retry loop.
"""

from __future__ import annotations

import http.client
import logging
from collections.abc import Callable
from typing import TypeVar

from azure.core.exceptions import AzureError, ClientAuthenticationError, HttpResponseError
from defusedxml import DefusedXmlException, ElementTree

from .models import OPERATION_TRACKING_ID_HEADER, ServiceManagementError
from .reporting import Reporter

logger = logging.getLogger(__name__)

T = TypeVar("T")

SM_NAMESPACE = "http://schemas.microsoft.com/windowsazure"

COMMUNICATION_COULD_NOT_BE_ESTABLISHED = (
    "Communication could not be established. This could be due to an invalid "
    "subscription ID. Note that subscription IDs are case sensitive."
)


def is_forbidden_fault(exc: BaseException) -> bool:
    """Return whether exc is a security fault whose transport response is HTTP 403."""
    if not isinstance(exc, ClientAuthenticationError):
        return False
    response = exc.response
    if response is None:
        return False
    return response.status_code == http.client.FORBIDDEN


def parse_error_payload(body: str | bytes | None) -> ServiceManagementError | None:
    """Parse a Service Management ``<Error>`` document.

    Returns None when the body is empty or is not an error document.
    """
    if not body:
        return None
    try:
        root = ElementTree.fromstring(body)
    except (ElementTree.ParseError, DefusedXmlException):
        return None

    if root.tag.rsplit("}", 1)[-1] != "Error":
        return None

    def text_of(tag: str) -> str | None:
        node = root.find(f"{{{SM_NAMESPACE}}}{tag}")
        if node is None:
            node = root.find(tag)
        return node.text if node is not None else None

    return ServiceManagementError(code=text_of("Code"), message=text_of("Message"))


def extract_error_details(exc: AzureError) -> tuple[ServiceManagementError | None, str | None]:
    """Return (structured error, request id) carried by a transport fault, if any."""
    if not isinstance(exc, HttpResponseError) or exc.response is None:
        return None, None

    response = exc.response
    operation_id = response.headers.get(OPERATION_TRACKING_ID_HEADER)
    try:
        body = response.text()
    except Exception as e:  # body may already be consumed or undecodable
        logger.debug("Could not read fault response body", extra={"error": str(e)})
        body = None

    return parse_error_payload(body), operation_id


def format_communication_fault(exc: AzureError) -> str:
    """Format a fault for the user.

    Uses the structured server error when the response carries one, else the
    raw exception text.
    """
    error, operation_id = extract_error_details(exc)
    if error is not None:
        return (
            f"HTTP Status Code: {error.code} - HTTP Error Message: {error.message}\n"
            f"Operation ID: {operation_id}"
        )
    return str(exc)


def invoke_action(action: Callable[[], object], reporter: Reporter) -> None:
    """Run a remote action, reporting a 403 security fault instead of raising it.

    Raises:
        AzureError: Any fault other than a 403 security fault, unchanged.
    """
    try:
        action()
    except ClientAuthenticationError as e:
        if not is_forbidden_fault(e):
            raise
        logger.debug("Security fault with HTTP 403", extra={"error": str(e)})
        reporter.report_error(COMMUNICATION_COULD_NOT_BE_ESTABLISHED)


def invoke_call(call: Callable[[], T], reporter: Reporter) -> T:
    """Run a remote call and return its result unmodified.

    A 403 security fault is reported and then re-raised; callers that need a
    value cannot continue without one.

    Raises:
        AzureError: Any fault, after reporting it if it is a 403 security fault.
    """
    try:
        return call()
    except ClientAuthenticationError as e:
        if is_forbidden_fault(e):
            logger.debug("Security fault with HTTP 403", extra={"error": str(e)})
            reporter.report_error(COMMUNICATION_COULD_NOT_BE_ESTABLISHED)
        raise
