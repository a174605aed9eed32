"""Parsing of free-form container image references."""

from dataclasses import dataclass
from typing import Optional

DEFAULT_REGISTRY = "docker.io"

# Hosts that all serve the default registry
DEFAULT_REGISTRY_ALIASES = frozenset(
    {
        "docker.io",
        "index.docker.io",
        "registry-1.docker.io",
        "registry.docker.io",
        "registry.hub.docker.com",
    }
)

KNOWN_REGISTRIES = ("ghcr.io", "gcr.io", "quay.io", "registry.gitlab.com", "lscr.io")


@dataclass(frozen=True)
class ImageReference:
    """Canonical components of an image reference.

    Attributes:
        registry: Registry host ("docker.io" for the default registry)
        namespace: Owner/organisation path ("library" for official images)
        repository: Repository name below the namespace, never empty
        tag: Tag, "latest" when the reference has none
        digest: Pinned sha256 digest if the reference carried one
    """

    registry: str
    namespace: Optional[str]
    repository: str
    tag: str = "latest"
    digest: Optional[str] = None

    @property
    def is_default_registry(self) -> bool:
        return self.registry == DEFAULT_REGISTRY

    @property
    def path(self) -> str:
        """namespace/repository without registry host."""
        if self.namespace:
            return f"{self.namespace}/{self.repository}"
        return self.repository

    @property
    def image_repo(self) -> str:
        """Lookup key used by the registry manager.

        Examples: "library/nginx", "linuxserver/plex", "ghcr.io/owner/app".
        """
        if self.is_default_registry:
            return self.path
        return f"{self.registry}/{self.path}"

    def __str__(self) -> str:
        return f"{self.image_repo}:{self.tag}"


def _strip_digest(image: str) -> tuple[str, Optional[str]]:
    name, sep, pinned = image.partition("@")
    if not sep:
        return image, None
    # "name@sha256" without a hex part is a truncated reference, drop it
    if pinned.startswith("sha256:") and len(pinned) > len("sha256:"):
        return name, pinned
    return name, None


def parse_image_reference(image: str) -> ImageReference:
    """Parse an image string into its canonical components.

    Args:
        image: e.g. "nginx", "nginx:1.25", "docker.io/library/nginx",
            "ghcr.io/owner/app:v2", "localhost:5000/team/app@sha256:..."

    Returns:
        ImageReference

    Raises:
        ValueError: If the reference is empty or has no repository
    """
    if not image or not image.strip():
        raise ValueError("Invalid image name provided")

    name, digest = _strip_digest(image.strip())

    # A colon after the last slash separates the tag; earlier ones are ports
    tag = "latest"
    colon = name.rfind(":")
    if colon > name.rfind("/"):
        name, tag = name[:colon], name[colon + 1:] or "latest"

    parts = [part for part in name.split("/") if part]
    if not parts:
        raise ValueError(f"Invalid image name provided: {image}")

    first = parts[0].lower()
    if len(parts) > 1 and (
        first in KNOWN_REGISTRIES
        or first in DEFAULT_REGISTRY_ALIASES
        or "." in first
        or ":" in first
        or first == "localhost"
    ):
        registry = first
        path = parts[1:]
    else:
        registry = DEFAULT_REGISTRY
        path = parts

    if registry in DEFAULT_REGISTRY_ALIASES:
        registry = DEFAULT_REGISTRY

    if len(path) > 1:
        namespace, repository = path[0], "/".join(path[1:])
    elif registry == DEFAULT_REGISTRY:
        namespace, repository = "library", path[0]
    else:
        namespace, repository = None, path[0]

    return ImageReference(
        registry=registry,
        namespace=namespace,
        repository=repository,
        tag=tag,
        digest=digest,
    )


def normalize_image_name(image: str) -> str:
    """Normalize an image string to "<image_repo>:<tag>"."""
    return str(parse_image_reference(image))
