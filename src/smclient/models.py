"""Pydantic models for subscriptions, the persisted profile and operations.

Field aliases are the camelCase names used in the profile file and in the
Service Management wire format.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from .certificates import normalize_thumbprint
from .environments import DEFAULT_ENVIRONMENT_NAME, Environment

# Response header carrying the id of an asynchronous operation
OPERATION_TRACKING_ID_HEADER = "x-ms-request-id"
CLIENT_REQUEST_ID_HEADER = "x-ms-client-request-id"
API_VERSION_HEADER = "x-ms-version"
SERVICE_MANAGEMENT_API_VERSION = "2014-06-01"


class OperationStatus(str, Enum):
    """Terminal and non-terminal states of a tracked operation."""

    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @classmethod
    def matches(cls, status: str | None, expected: OperationStatus) -> bool:
        return status is not None and status.lower() == expected.value.lower()


class ServiceManagementError(BaseModel):
    """Structured error returned by the management service."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    code: str | None = Field(None, alias="Code")
    message: str | None = Field(None, alias="Message")


class Operation(BaseModel):
    """Status of an asynchronous operation as last reported by the server.

    An empty operation_id means no operation was issued.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    operation_id: str = Field("", alias="ID")
    status: str = Field(OperationStatus.IN_PROGRESS.value, alias="Status")
    http_status_code: int | None = Field(None, alias="HttpStatusCode")
    error: ServiceManagementError | None = Field(None, alias="Error")

    @classmethod
    def no_operation(cls) -> Operation:
        return cls(operation_id="", status=OperationStatus.FAILED.value)

    @property
    def succeeded(self) -> bool:
        return OperationStatus.matches(self.status, OperationStatus.SUCCEEDED)

    @property
    def failed(self) -> bool:
        return OperationStatus.matches(self.status, OperationStatus.FAILED)

    @property
    def is_terminal(self) -> bool:
        return self.succeeded or self.failed


class Subscription(BaseModel):
    """A subscription in the profile.

    The management certificate is held as a thumbprint only; the certificate
    itself lives in the credential store.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = Field(min_length=1)
    subscription_id: str = Field(alias="subscriptionId", min_length=1)
    service_endpoint: str | None = Field(None, alias="managementEndpoint")
    is_default: bool = Field(False, alias="isDefault")
    certificate_thumbprint: str | None = Field(None, alias="managementCertificate")
    current_storage_account_name: str | None = Field(None, alias="cloudStorageAccount")

    @field_validator("subscription_id", mode="before")
    @classmethod
    def strip_subscription_id(cls, v: object) -> object:
        return v.strip() if isinstance(v, str) else v

    @field_validator("certificate_thumbprint")
    @classmethod
    def normalize_thumbprint(cls, v: str | None) -> str | None:
        if not v:
            return None
        return normalize_thumbprint(v)


class ProfileData(BaseModel):
    """Persisted profile document."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    default_environment_name: str = Field(DEFAULT_ENVIRONMENT_NAME, alias="defaultEnvironmentName")
    environments: list[Environment] = Field(default_factory=list)
    subscriptions: list[Subscription] = Field(default_factory=list)


@dataclass
class ManagementOperationContext:
    """Record emitted to the caller after a client action completes."""

    operation_description: str
    operation_id: str | None
    operation_status: str | None
