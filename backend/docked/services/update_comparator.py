"""Digest and version-tag comparison for update detection."""

import logging
from typing import TYPE_CHECKING, Optional

from packaging.version import InvalidVersion, Version

if TYPE_CHECKING:
    from docked.services.registry.base import DigestResult

logger = logging.getLogger(__name__)


def normalize_digest(digest: Optional[str]) -> Optional[str]:
    """Normalize a digest to the ``sha256:<hex>`` form.

    Idempotent: "abc123" and "sha256:abc123" both become "sha256:abc123".
    """
    if not digest:
        return None
    digest = digest.strip()
    if not digest:
        return None
    if digest.startswith("sha256:"):
        return digest
    return f"sha256:{digest}"


def normalize_version(version: Optional[str]) -> str:
    """Strip a leading "v", surrounding whitespace and case."""
    if not version:
        return ""
    value = str(version).strip()
    if value[:1] in ("v", "V"):
        value = value[1:]
    return value.strip().lower()


def _parse_version(version: str) -> Optional[Version]:
    """Parse version, retrying with the part before a "-" or "_" suffix.

    "1.2.3-alpine" parses as 1.2.3. Returns None for tags like "stable".
    """
    if "+" in version:
        version = version.split("+", 1)[0]
    try:
        return Version(version)
    except InvalidVersion:
        for sep in ("-", "_"):
            if sep in version:
                try:
                    return Version(version.split(sep, 1)[0])
                except InvalidVersion:
                    continue
        return None


def compare_versions(v1: Optional[str], v2: Optional[str]) -> int:
    """Compare two version tags.

    When both parse as versions ("1.2", "v1.2.3") they are compared
    numerically, missing parts counting as 0. Otherwise the normalized
    strings are compared lexicographically.

    Returns:
        -1 if v1 < v2, 0 if equal, 1 if v1 > v2
    """
    n1 = normalize_version(v1)
    n2 = normalize_version(v2)

    parsed1 = _parse_version(n1)
    parsed2 = _parse_version(n2)
    if parsed1 is not None and parsed2 is not None:
        if parsed1 == parsed2:
            return 0
        return -1 if parsed1 < parsed2 else 1

    if n1 == n2:
        return 0
    return -1 if n1 < n2 else 1


def version_has_update(current_tag: Optional[str], latest_tag: Optional[str]) -> bool:
    """True when latest_tag is a newer version than current_tag."""
    if not current_tag or not latest_tag:
        return False
    return compare_versions(current_tag, latest_tag) < 0


def has_update(
    current_digest: Optional[str],
    current_tag: Optional[str],
    latest_info: Optional["DigestResult"],
) -> bool:
    """Decide whether latest_info describes a newer image than the current one.

    Fallback (release) results compare version tags. Otherwise digests are
    compared after normalization, then tags when a digest is missing.
    Insufficient information never reports an update.
    """
    if latest_info is None:
        return False

    if latest_info.is_fallback:
        return version_has_update(current_tag, latest_info.tag)

    current = normalize_digest(current_digest)
    latest = normalize_digest(latest_info.digest)
    if current and latest:
        return current != latest

    if current_tag and latest_info.tag:
        return current_tag != latest_info.tag

    return False
