"""Cloud environments: built-in endpoint sets plus user-defined ones.

An environment is a named set of endpoints (management API, portal,
publish-settings download, storage) that subscriptions can target. The
built-in environments are fixed at import time and cannot be added over,
changed or removed; custom environments live in the profile.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from pydantic import BaseModel, Field, field_validator

from .errors import BuiltinEnvironmentError, AlreadyExistsError, NotFoundError

logger = logging.getLogger(__name__)

AZURE_CLOUD = "AzureCloud"
AZURE_CHINA_CLOUD = "AzureChinaCloud"

# {scheme}://{account}.{service}.{suffix}/
STORAGE_ENDPOINT_TEMPLATE = "{{scheme}}://{{account}}.{service}.{suffix}/"
STORAGE_SERVICES = ("blob", "queue", "table", "file")

REALM_QUERY_FORMAT = "&whr={realm}"

# RFC 1123 host name, used for the storage endpoint suffix
VALID_DNS_NAME_PATTERN = re.compile(
    r"^(?=.{1,253}$)([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


class Environment(BaseModel):
    """A named set of cloud endpoints."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = Field(min_length=1)
    publish_settings_file_url: str | None = Field(None, alias="publishSettingsFileUrl")
    service_endpoint: str | None = Field(None, alias="serviceEndpoint")
    management_portal_url: str | None = Field(None, alias="managementPortalUrl")
    storage_endpoint_suffix: str | None = Field(None, alias="storageEndpointSuffix")
    ad_tenant_url: str | None = Field(None, alias="adTenantUrl")
    common_tenant_id: str | None = Field(None, alias="commonTenantId")

    @field_validator("storage_endpoint_suffix")
    @classmethod
    def validate_storage_suffix(cls, v: str | None) -> str | None:
        if not v:
            return None
        if not VALID_DNS_NAME_PATTERN.match(v):
            raise ValueError(f"storage endpoint suffix must be a valid DNS name: {v}")
        return v

    def _endpoint_format_for(self, service: str) -> str | None:
        if not self.storage_endpoint_suffix:
            return None
        return STORAGE_ENDPOINT_TEMPLATE.format(service=service, suffix=self.storage_endpoint_suffix)

    @property
    def storage_blob_endpoint_format(self) -> str | None:
        return self._endpoint_format_for("blob")

    @property
    def storage_queue_endpoint_format(self) -> str | None:
        return self._endpoint_format_for("queue")

    @property
    def storage_table_endpoint_format(self) -> str | None:
        return self._endpoint_format_for("table")

    @property
    def storage_file_endpoint_format(self) -> str | None:
        return self._endpoint_format_for("file")

    def get_storage_endpoint(self, service: str, account_name: str, use_https: bool = True) -> str | None:
        """Fully qualified storage endpoint for an account.

        Returns None when the environment has no storage suffix, meaning
        storage is not supported there.

        Raises:
            ValueError: If service is not one of blob, queue, table, file.
        """
        if service not in STORAGE_SERVICES:
            raise ValueError(f"Unknown storage service '{service}'. Valid services: {STORAGE_SERVICES}")
        endpoint_format = self._endpoint_format_for(service)
        if endpoint_format is None:
            return None
        return endpoint_format.format(scheme="https" if use_https else "http", account=account_name)

    def get_storage_blob_endpoint(self, account_name: str, use_https: bool = True) -> str | None:
        return self.get_storage_endpoint("blob", account_name, use_https)

    def get_storage_queue_endpoint(self, account_name: str, use_https: bool = True) -> str | None:
        return self.get_storage_endpoint("queue", account_name, use_https)

    def get_storage_table_endpoint(self, account_name: str, use_https: bool = True) -> str | None:
        return self.get_storage_endpoint("table", account_name, use_https)

    def get_storage_file_endpoint(self, account_name: str, use_https: bool = True) -> str | None:
        return self.get_storage_endpoint("file", account_name, use_https)

    def publish_settings_file_url_with_realm(self, realm: str | None = None) -> str | None:
        return _add_realm(self.publish_settings_file_url, realm)

    def management_portal_url_with_realm(self, realm: str | None = None) -> str | None:
        return _add_realm(self.management_portal_url, realm)


def _add_realm(base_url: str | None, realm: str | None) -> str | None:
    if base_url is None or not realm:
        return base_url
    return base_url + REALM_QUERY_FORMAT.format(realm=realm)


BUILTIN_ENVIRONMENTS: tuple[Environment, ...] = (
    Environment(
        name=AZURE_CLOUD,
        publish_settings_file_url="https://manage.windowsazure.com/publishsettings/index",
        service_endpoint="https://management.core.windows.net/",
        management_portal_url="https://manage.windowsazure.com/",
        storage_endpoint_suffix="core.windows.net",
        ad_tenant_url="https://login.windows.net/",
        common_tenant_id="common",
    ),
    Environment(
        name=AZURE_CHINA_CLOUD,
        publish_settings_file_url="https://manage.windowsazure.cn/publishsettings/index",
        service_endpoint="https://management.core.chinacloudapi.cn/",
        management_portal_url="https://manage.windowsazure.cn/",
        storage_endpoint_suffix="core.chinacloudapi.cn",
        ad_tenant_url="https://login.chinacloudapi.cn/",
        common_tenant_id="common",
    ),
)

DEFAULT_ENVIRONMENT_NAME = AZURE_CLOUD


class EnvironmentRegistry:
    """Built-in environments merged with custom ones, keyed case-insensitively.

    The registry only holds state; persisting custom environments is the
    profile's job.
    """

    def __init__(
        self,
        custom: Iterable[Environment] = (),
        builtins: Iterable[Environment] = BUILTIN_ENVIRONMENTS,
    ) -> None:
        self._builtins: dict[str, Environment] = {env.name.lower(): env for env in builtins}
        self._custom: dict[str, Environment] = {}
        for env in custom:
            self.register(env)

    def is_builtin(self, name: str) -> bool:
        return name.lower() in self._builtins

    def register(self, env: Environment) -> Environment:
        """Add a custom environment.

        Raises:
            BuiltinEnvironmentError: If the name is a built-in environment.
            AlreadyExistsError: If a custom environment with the name exists.
        """
        key = env.name.lower()
        if key in self._builtins:
            raise BuiltinEnvironmentError(f"Cannot add environment '{env.name}': it is a built-in environment")
        if key in self._custom:
            raise AlreadyExistsError(f"Environment '{env.name}' already exists")
        self._custom[key] = env
        logger.debug("Registered environment", extra={"environment": env.name})
        return env

    def lookup(self, name: str) -> Environment:
        """Get an environment by name.

        Raises:
            NotFoundError: If no environment has that name.
        """
        key = name.lower()
        env = self._builtins.get(key) or self._custom.get(key)
        if env is None:
            raise NotFoundError(f"Environment '{name}' not found")
        return env

    def update(self, name: str, **changes: str | None) -> Environment:
        """Change fields of a custom environment; None values leave a field as is.

        Raises:
            BuiltinEnvironmentError: If name is a built-in environment.
            NotFoundError: If no custom environment has that name.
        """
        key = name.lower()
        if key in self._builtins:
            raise BuiltinEnvironmentError(f"Cannot change built-in environment '{name}'")
        current = self._custom.get(key)
        if current is None:
            raise NotFoundError(f"Environment '{name}' not found")

        unknown = set(changes) - set(Environment.model_fields) - {"name"}
        if unknown:
            raise ValueError(f"Unknown environment fields: {sorted(unknown)}")
        changes.pop("name", None)

        data = current.model_dump()
        data.update({field: value for field, value in changes.items() if value})
        updated = Environment.model_validate(data)
        self._custom[key] = updated
        return updated

    def remove(self, name: str) -> Environment:
        """Remove a custom environment.

        Raises:
            BuiltinEnvironmentError: If name is a built-in environment.
            NotFoundError: If no custom environment has that name.
        """
        key = name.lower()
        if key in self._builtins:
            raise BuiltinEnvironmentError(f"Cannot remove built-in environment '{name}'")
        env = self._custom.pop(key, None)
        if env is None:
            raise NotFoundError(f"Environment '{name}' not found")
        return env

    def list_all(self) -> list[Environment]:
        """Built-ins first, then custom environments; a built-in name always wins."""
        customs = [env for key, env in self._custom.items() if key not in self._builtins]
        return [*self._builtins.values(), *customs]

    def custom_environments(self) -> list[Environment]:
        return list(self._custom.values())
