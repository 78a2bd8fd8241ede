"""Profile: environments, subscriptions and the current selection.

The Profile aggregates the environment registry, the persisted subscription
list and the credential store. Every mutating method saves the profile before
returning; persistence errors propagate to the caller. All access goes
through one re-entrant lock, so a Profile can be shared by threads.
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path

from .certificates import Certificate, CredentialResolver, FileCertificateStore
from .config import VALID_SUBSCRIPTION_ID_PATTERN, ClientConfig, ConfigurationError
from .environments import DEFAULT_ENVIRONMENT_NAME, Environment, EnvironmentRegistry
from .errors import AlreadyExistsError, NotFoundError
from .models import ProfileData, Subscription
from .profile_store import ProfileStore
from .publish_settings import load_publish_settings, resolve_publish_settings_path

logger = logging.getLogger(__name__)


class Profile:
    """Process-wide client state, loaded lazily from the profile store."""

    def __init__(self, store: ProfileStore, credentials: CredentialResolver) -> None:
        self.store = store
        self.credentials = credentials
        self._lock = threading.RLock()
        self._loaded = False
        self._registry = EnvironmentRegistry()
        self._default_environment_name = DEFAULT_ENVIRONMENT_NAME
        self._subscriptions: list[Subscription] = []
        self._current_subscription_name: str | None = None

    @classmethod
    def load(cls, config: ClientConfig) -> Profile:
        """Build a profile over the configured store; the file is read on first access."""
        return cls(
            store=ProfileStore(config.profile_path),
            credentials=FileCertificateStore(config.user_cert_dir, config.machine_cert_dir),
        )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        data = self.store.load()

        registry = EnvironmentRegistry()
        for env in data.environments:
            if registry.is_builtin(env.name):
                logger.warning("Ignoring persisted environment shadowing a built-in", extra={"environment": env.name})
                continue
            try:
                registry.register(env)
            except AlreadyExistsError:
                logger.warning("Ignoring duplicate persisted environment", extra={"environment": env.name})
        self._registry = registry

        subscriptions: list[Subscription] = []
        seen: set[str] = set()
        for sub in data.subscriptions:
            if sub.name.lower() in seen:
                logger.warning("Ignoring duplicate persisted subscription", extra={"subscription": sub.name})
                continue
            seen.add(sub.name.lower())
            subscriptions.append(sub)
        self._subscriptions = subscriptions
        self._enforce_single_default()

        self._default_environment_name = data.default_environment_name
        self._loaded = True
        logger.debug(
            "Loaded profile",
            extra={"path": str(self.store.path), "subscriptions": len(subscriptions)},
        )

    def _save(self) -> None:
        self.store.save(
            ProfileData(
                default_environment_name=self._default_environment_name,
                environments=self._registry.custom_environments(),
                subscriptions=list(self._subscriptions),
            )
        )

    def reload(self) -> None:
        """Drop in-memory state and read the profile again on next access."""
        with self._lock:
            self._loaded = False
            self._current_subscription_name = None

    # -------------------------------------------------------------------------
    # Environments
    # -------------------------------------------------------------------------

    @property
    def current_environment(self) -> Environment:
        """The selected environment, falling back to the primary built-in cloud."""
        with self._lock:
            self._ensure_loaded()
            try:
                return self._registry.lookup(self._default_environment_name)
            except NotFoundError:
                logger.warning(
                    "Selected environment no longer exists, using the default",
                    extra={"environment": self._default_environment_name},
                )
                return self._registry.lookup(DEFAULT_ENVIRONMENT_NAME)

    def list_environments(self) -> list[Environment]:
        with self._lock:
            self._ensure_loaded()
            return self._registry.list_all()

    def is_builtin_environment(self, name: str) -> bool:
        return self._registry.is_builtin(name)

    def get_environment(self, name: str) -> Environment:
        with self._lock:
            self._ensure_loaded()
            return self._registry.lookup(name)

    def add_environment(self, env: Environment) -> Environment:
        with self._lock:
            self._ensure_loaded()
            self._registry.register(env)
            self._save()
            return env

    def update_environment(self, name: str, **changes: str | None) -> Environment:
        with self._lock:
            self._ensure_loaded()
            env = self._registry.update(name, **changes)
            self._save()
            return env

    def remove_environment(self, name: str) -> Environment:
        with self._lock:
            self._ensure_loaded()
            env = self._registry.remove(name)
            if env.name.lower() == self._default_environment_name.lower():
                self._default_environment_name = DEFAULT_ENVIRONMENT_NAME
            self._save()
            return env

    def select_environment(self, name: str) -> Environment:
        """Make an environment current and persist the choice.

        Raises:
            NotFoundError: If no environment has that name.
        """
        with self._lock:
            self._ensure_loaded()
            env = self._registry.lookup(name)
            self._default_environment_name = env.name
            self._save()
            return env

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    @property
    def subscriptions(self) -> list[Subscription]:
        with self._lock:
            self._ensure_loaded()
            return list(self._subscriptions)

    @property
    def default_subscription(self) -> Subscription | None:
        with self._lock:
            self._ensure_loaded()
            return next((s for s in self._subscriptions if s.is_default), None)

    @property
    def current_subscription(self) -> Subscription | None:
        """The selected subscription, else the default one, else None."""
        with self._lock:
            self._ensure_loaded()
            if self._current_subscription_name is not None:
                current = self._find(self._current_subscription_name)
                if current is not None:
                    return current
            return self.default_subscription

    def _find(self, name: str) -> Subscription | None:
        key = name.lower()
        return next((s for s in self._subscriptions if s.name.lower() == key), None)

    def _index_of(self, name: str) -> int:
        key = name.lower()
        for index, sub in enumerate(self._subscriptions):
            if sub.name.lower() == key:
                return index
        raise NotFoundError(f"Subscription '{name}' not found")

    def _enforce_single_default(self) -> None:
        found = False
        for index, sub in enumerate(self._subscriptions):
            if sub.is_default:
                if found:
                    self._subscriptions[index] = sub.model_copy(update={"is_default": False})
                found = True

    def _set_default_at(self, target: int) -> None:
        self._subscriptions = [
            sub.model_copy(update={"is_default": index == target}) for index, sub in enumerate(self._subscriptions)
        ]

    def get_subscription(self, name: str) -> Subscription:
        """Get a subscription by name (case-insensitive).

        Raises:
            NotFoundError: If no subscription has that name.
        """
        with self._lock:
            self._ensure_loaded()
            return self._subscriptions[self._index_of(name)]

    def get_subscription_id(self, name: str) -> str:
        """Get the id of a named subscription, checking it is a GUID.

        Raises:
            NotFoundError: If no subscription has that name.
            ConfigurationError: If the stored id is not a GUID.
        """
        subscription_id = self.get_subscription(name).subscription_id
        if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, subscription_id.lower()):
            raise ConfigurationError(f"Subscription '{name}' has an invalid subscription id: {subscription_id}")
        return subscription_id

    def add_subscription(self, subscription: Subscription) -> Subscription:
        """Add a subscription. A subscription marked default becomes the only default.

        Raises:
            AlreadyExistsError: If a subscription with the same name exists.
        """
        with self._lock:
            self._ensure_loaded()
            if self._find(subscription.name) is not None:
                raise AlreadyExistsError(f"Subscription '{subscription.name}' already exists")
            self._subscriptions.append(subscription)
            if subscription.is_default:
                self._set_default_at(len(self._subscriptions) - 1)
            self._save()
            return subscription

    def update_subscription(self, subscription: Subscription) -> Subscription:
        """Replace the subscription with the same name.

        Raises:
            NotFoundError: If no subscription has that name.
        """
        with self._lock:
            self._ensure_loaded()
            index = self._index_of(subscription.name)
            self._subscriptions[index] = subscription
            if subscription.is_default:
                self._set_default_at(index)
            self._save()
            return subscription

    def remove_subscription(self, name: str) -> Subscription:
        """Remove a subscription and, if nothing else uses it, its certificate.

        Raises:
            NotFoundError: If no subscription has that name.
        """
        with self._lock:
            self._ensure_loaded()
            removed = self._subscriptions.pop(self._index_of(name))
            if (
                self._current_subscription_name is not None
                and self._current_subscription_name.lower() == removed.name.lower()
            ):
                self._current_subscription_name = None
            self._save()

            if removed.certificate_thumbprint:
                self._discard_certificates([removed.certificate_thumbprint])

            logger.info("Removed subscription", extra={"subscription": removed.name})
            return removed

    def set_current_subscription(self, name: str | None) -> Subscription | None:
        """Select the current subscription; None goes back to the default.

        The selection lasts for this process only and is not persisted.

        Raises:
            NotFoundError: If no subscription has that name.
        """
        with self._lock:
            self._ensure_loaded()
            if name is None:
                self._current_subscription_name = None
                return self.default_subscription
            sub = self._subscriptions[self._index_of(name)]
            self._current_subscription_name = sub.name
            return sub

    def set_default_subscription(self, name: str) -> Subscription:
        """Mark a subscription as the default, clearing the previous default.

        Raises:
            NotFoundError: If no subscription has that name.
        """
        with self._lock:
            self._ensure_loaded()
            index = self._index_of(name)
            self._set_default_at(index)
            self._save()
            return self._subscriptions[index]

    def resolve_certificate(self, subscription: Subscription) -> Certificate | None:
        if not subscription.certificate_thumbprint:
            return None
        return self.credentials.resolve(subscription.certificate_thumbprint)

    def service_endpoint_for(self, subscription: Subscription) -> str | None:
        """The subscription's endpoint override, else the current environment's endpoint."""
        return subscription.service_endpoint or self.current_environment.service_endpoint

    # -------------------------------------------------------------------------
    # Publish settings import
    # -------------------------------------------------------------------------

    def import_publish_settings(self, path: Path | None = None) -> list[Subscription]:
        """Import subscriptions from a publish-settings file or directory.

        Certificates are installed into the credential store and the
        subscriptions reference them by thumbprint. A subscription whose id
        or name matches an existing one replaces it and keeps its default
        flag. If no subscription is default afterwards, the first imported
        one becomes default.
        The import is all or nothing: on any error the profile is left as it
        was and certificates installed by this import are removed again.

        Args:
            path: A publish-settings file, or a directory to take the first
                  ``*.publishsettings`` file from. Defaults to the current directory.

        Returns:
            The imported subscriptions as stored in the profile.

        Raises:
            PublishSettingsError: If the file cannot be found or parsed.
            CertificateError: If a certificate cannot be installed.
        """
        settings_path = resolve_publish_settings_path(path)
        published = load_publish_settings(settings_path)

        with self._lock:
            self._ensure_loaded()
            previous = list(self._subscriptions)
            installed: list[str] = []
            try:
                incoming: list[Subscription] = []
                for entry in published:
                    thumbprint = self.credentials.store(entry.certificate_data) if entry.certificate_data else None
                    if thumbprint is None:
                        logger.warning(
                            "Imported subscription has no management certificate", extra={"subscription": entry.name}
                        )
                    else:
                        installed.append(thumbprint)
                    incoming.append(
                        Subscription(
                            name=entry.name,
                            subscription_id=entry.subscription_id,
                            service_endpoint=entry.service_endpoint,
                            certificate_thumbprint=thumbprint,
                        )
                    )

                imported = [self._merge_imported(subscription) for subscription in incoming]
                if self.default_subscription is None and imported:
                    self._set_default_at(self._index_of(imported[0].name))

                self._save()
            except Exception:
                self._subscriptions = previous
                self._discard_certificates(installed)
                raise

            stored = [self._subscriptions[self._index_of(sub.name)] for sub in imported]
            logger.info(
                "Imported publish settings",
                extra={"path": str(settings_path), "subscriptions": [s.name for s in stored]},
            )
            return stored

    def _merge_imported(self, subscription: Subscription) -> Subscription:
        key_id = subscription.subscription_id.lower()
        key_name = subscription.name.lower()
        replaced = [
            index
            for index, existing in enumerate(self._subscriptions)
            if existing.subscription_id.lower() == key_id or existing.name.lower() == key_name
        ]
        if not replaced:
            self._subscriptions.append(subscription)
            return subscription

        previous = [self._subscriptions[index] for index in replaced]
        merged = subscription.model_copy(
            update={
                "is_default": any(s.is_default for s in previous),
                "current_storage_account_name": next(
                    (s.current_storage_account_name for s in previous if s.current_storage_account_name), None
                ),
            }
        )
        position = replaced[0]
        for index in reversed(replaced):
            del self._subscriptions[index]
        self._subscriptions.insert(position, merged)
        return merged

    def _discard_certificates(self, thumbprints: list[str]) -> None:
        """Remove certificates that no subscription in the profile references."""
        in_use = {s.certificate_thumbprint for s in self._subscriptions}
        for thumbprint in dict.fromkeys(thumbprints):
            if thumbprint not in in_use:
                self.credentials.remove(thumbprint)
