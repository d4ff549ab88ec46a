"""
Container Image References
Splits image references into the parts the engine's pull API expects
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

from cheeky_runner.errors import InfrastructureError

DEFAULT_TAG = "latest"

# Pattern for the repository part (after any registry has been split off)
REPOSITORY_PATTERN = re.compile(r'^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$')
TAG_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')
DIGEST_PATTERN = re.compile(r'^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-fA-F0-9]{32,}$')


@dataclass(frozen=True)
class ImageReference:
    """Parsed image reference"""
    registry: Optional[str]
    repository: str
    tag: str
    digest: Optional[str] = None

    @property
    def name(self) -> str:
        """Registry-qualified repository name"""
        return f"{self.registry}/{self.repository}" if self.registry else self.repository

    def pull_args(self) -> Tuple[str, str]:
        """
        Arguments for images.pull(repository, tag=...)

        A digest takes precedence over the tag. An untagged reference pulls
        "latest", never every tag of the repository.
        """
        return self.name, self.digest or self.tag

    def __str__(self) -> str:
        if self.digest:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag}"


def _split_registry(remainder: str) -> Tuple[Optional[str], str]:
    first, sep, rest = remainder.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first, rest
    return None, remainder


def parse_image(image: str) -> ImageReference:
    """
    Parse an image reference such as "alpine", "alpine:3.19",
    "ghcr.io/org/tool:1.2" or "repo@sha256:<hex>"

    Raises:
        InfrastructureError: if the reference is malformed
    """
    ref = (image or "").strip()
    if not ref:
        raise InfrastructureError("Image reference is empty")

    remainder, _, digest = ref.partition("@")
    if digest and not DIGEST_PATTERN.match(digest):
        raise InfrastructureError(f"Invalid image digest: {image}")

    registry, path = _split_registry(remainder)

    tag = None
    last_slash = path.rfind("/")
    colon = path.rfind(":")
    if colon > last_slash:
        path, tag = path[:colon], path[colon + 1:]
        if not TAG_PATTERN.match(tag):
            raise InfrastructureError(f"Invalid image tag: {image}")

    if not REPOSITORY_PATTERN.match(path):
        raise InfrastructureError(f"Invalid image repository: {image}")

    return ImageReference(
        registry=registry,
        repository=path,
        tag=tag or DEFAULT_TAG,
        digest=digest or None
    )
