"""Conversion between Azure VM IDs and provider IDs.

A provider ID is the externally visible identifier of a machine's backing
VM, e.g. ``azure://2c3f5a1e-8b7d-4c2a-9e1f-0a1b2c3d4e5f``. The suffix is the
``vmId`` Azure assigns to every virtual machine at creation time.

Both conversions are total: invalid input yields an empty string.
"""

from __future__ import annotations

import re

PROVIDER_ID_PREFIX = "azure://"

UUID_PATTERN = r"[a-f\d]{8}-[a-f\d]{4}-[a-f\d]{4}-[a-f\d]{4}-[a-f\d]{12}"

_UUID_RE = re.compile(rf"^{UUID_PATTERN}$", re.IGNORECASE)
_PROVIDER_ID_RE = re.compile(
    rf"^{re.escape(PROVIDER_ID_PREFIX)}({UUID_PATTERN})$", re.IGNORECASE
)


def convert_uuid_to_provider_id(uuid: str | None) -> str:
    """Transform a VM UUID into a provider ID.

    Args:
        uuid: The VM's native ID.

    Returns:
        The provider ID, or "" if ``uuid`` is empty or not a UUID.
    """
    if not uuid or not isinstance(uuid, str):
        return ""
    if not _UUID_RE.fullmatch(uuid):
        return ""
    return PROVIDER_ID_PREFIX + uuid


def convert_provider_id_to_uuid(provider_id: str | None) -> str:
    """Transform a provider ID into a VM UUID.

    Matching is case-insensitive for both the scheme and the UUID.

    Args:
        provider_id: The provider ID.

    Returns:
        The UUID, or "" if ``provider_id`` is empty or malformed.
    """
    if not provider_id or not isinstance(provider_id, str):
        return ""
    match = _PROVIDER_ID_RE.fullmatch(provider_id)
    if match is None:
        return ""
    return match.group(1)
