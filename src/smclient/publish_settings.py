"""Publish-settings file loading.

A publish-settings file is an XML document with one or more PublishProfile
elements, each holding Subscription entries. Older files put the management
URL and certificate on the PublishProfile; newer ones put them on each
Subscription. A subscription-level value always wins.

SECURITY: The file is size-checked before reading and parsed with defusedxml.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from pathlib import Path

from defusedxml import DefusedXmlException, ElementTree

from .config import MAX_PUBLISH_SETTINGS_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

PUBLISH_SETTINGS_SUFFIX = ".publishsettings"


class PublishSettingsError(Exception):
    """Raised when a publish-settings file cannot be found, read or parsed."""

    pass


@dataclass(frozen=True)
class PublishedSubscription:
    """One subscription entry from a publish-settings file."""

    name: str
    subscription_id: str
    service_endpoint: str | None
    certificate_data: bytes | None


def resolve_publish_settings_path(path: Path | None = None) -> Path:
    """Resolve a file or directory argument to one publish-settings file.

    A directory (or no path, meaning the current directory) resolves to its
    first ``*.publishsettings`` file in name order.

    Raises:
        PublishSettingsError: If the path does not exist or a directory holds
            no publish-settings file.
    """
    path = path or Path.cwd()
    if path.is_file():
        return path
    if not path.is_dir():
        raise PublishSettingsError(f"Publish settings file not found: {path}")

    candidates = sorted(path.glob(f"*{PUBLISH_SETTINGS_SUFFIX}"))
    if not candidates:
        raise PublishSettingsError(f"No publish settings files with extension *{PUBLISH_SETTINGS_SUFFIX} found in {path}")
    if len(candidates) > 1:
        logger.warning(
            "Multiple publish settings files found, using the first",
            extra={"directory": str(path), "selected": candidates[0].name, "count": len(candidates)},
        )
    return candidates[0]


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _attr(element, name: str) -> str | None:
    value = element.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _decode_certificate(value: str | None, where: str) -> bytes | None:
    if value is None:
        return None
    try:
        return base64.b64decode(value, validate=False)
    except (binascii.Error, ValueError) as e:
        raise PublishSettingsError(f"Invalid base64 management certificate in {where}") from e


def parse_publish_settings(content: str | bytes, source: str = "<string>") -> list[PublishedSubscription]:
    """Parse publish-settings XML into subscription entries.

    Args:
        content: The XML document.
        source: Name used in error messages.

    Returns:
        Subscriptions in document order.

    Raises:
        PublishSettingsError: If the document is malformed, has no
            subscriptions, or a subscription lacks an id or name.
    """
    try:
        root = ElementTree.fromstring(content)
    except (ElementTree.ParseError, DefusedXmlException) as e:
        raise PublishSettingsError(f"Invalid publish settings XML in {source}: {e}") from e

    if _local_name(root.tag) != "PublishData":
        raise PublishSettingsError(f"{source} is not a publish settings file (root element {_local_name(root.tag)})")

    subscriptions: list[PublishedSubscription] = []
    for profile in root:
        if _local_name(profile.tag) != "PublishProfile":
            continue
        profile_endpoint = _attr(profile, "Url")
        profile_certificate = _decode_certificate(_attr(profile, "ManagementCertificate"), source)

        for entry in profile:
            if _local_name(entry.tag) != "Subscription":
                continue
            subscription_id = _attr(entry, "Id")
            name = _attr(entry, "Name")
            if not subscription_id or not name:
                raise PublishSettingsError(f"Subscription entry without Id or Name in {source}")

            certificate = _decode_certificate(_attr(entry, "ManagementCertificate"), source)
            subscriptions.append(
                PublishedSubscription(
                    name=name,
                    subscription_id=subscription_id,
                    service_endpoint=_attr(entry, "ServiceManagementUrl") or profile_endpoint,
                    certificate_data=certificate or profile_certificate,
                )
            )

    if not subscriptions:
        raise PublishSettingsError(f"No subscriptions found in {source}")
    return subscriptions


def load_publish_settings(path: Path) -> list[PublishedSubscription]:
    """Read and parse a publish-settings file.

    Raises:
        PublishSettingsError: If the file is missing, too large or invalid.
    """
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise PublishSettingsError(f"Failed to stat publish settings file {path}: {e}") from e

    if file_size > MAX_PUBLISH_SETTINGS_FILE_SIZE_BYTES:
        raise PublishSettingsError(
            f"Publish settings file exceeds maximum size of {MAX_PUBLISH_SETTINGS_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_bytes()
    except OSError as e:
        raise PublishSettingsError(f"Failed to read publish settings file {path}: {e}") from e

    subscriptions = parse_publish_settings(content, source=str(path))
    logger.info("Loaded publish settings from %s", path, extra={"subscriptions": len(subscriptions)})
    return subscriptions
