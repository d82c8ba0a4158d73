"""Image reference utilities for compose services.

Resolves ``${VAR}`` substitutions in image references, normalizes them into
registry / repository / tag parts and decides whether a tag is mutable
(i.e. worth pulling forward).
"""

import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_REGISTRY = "docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"

# Hostnames that all point at Docker Hub
DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io"}

# Tags that are routinely moved to new content
MUTABLE_TAGS = {
    "latest", "main", "master", "dev", "develop", "edge", "nightly", "canary",
}

_MAJOR_ONLY = re.compile(r"^[0-9]+$")
_MAJOR_MINOR = re.compile(r"^[0-9]+\.[0-9]+$")
_FULL_SEMVER = re.compile(r"^v?[0-9]+\.[0-9]+\.[0-9]+")
_DIGEST = re.compile(r"@(sha256:[0-9a-fA-F]+)$")

# ${NAME}, ${NAME:-default}, ${NAME-default}
_ENV_TOKEN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::?-([^}]*))?\}")
MAX_SUBSTITUTION_PASSES = 10


# ---------------------------------------------------------------------------
# Environment substitution
# ---------------------------------------------------------------------------

def resolve_env_vars(value: str, env_vars: Optional[Mapping[str, str]] = None,
                     environ: Optional[Mapping[str, str]] = None) -> str:
    """Substitute ``${VAR}`` style tokens in *value*.

    Lookup order is: *env_vars* (usually the project's ``.env`` file), then
    *environ* (defaults to the process environment), then the inline default,
    then the empty string.  Empty values are treated as unset.
    """
    file_vars = env_vars or {}
    process_vars = os.environ if environ is None else environ

    def _lookup(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        return file_vars.get(name) or process_vars.get(name) or default or ""

    result = value
    for _ in range(MAX_SUBSTITUTION_PASSES):
        if not _ENV_TOKEN.search(result):
            break
        # re.sub never rescans a replacement within the same pass
        result = _ENV_TOKEN.sub(_lookup, result)
    return result


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImageReference:
    """A normalized image reference."""
    registry: str
    repository: str
    tag_or_digest: str
    is_digest_pinned: bool = False

    @property
    def tag(self) -> Optional[str]:
        return None if self.is_digest_pinned else self.tag_or_digest

    @property
    def digest(self) -> Optional[str]:
        return self.tag_or_digest if self.is_digest_pinned else None

    @property
    def upgradeable(self) -> bool:
        """True when pulling again could bring in new content."""
        if self.is_digest_pinned:
            return False
        return is_upgradeable(self.tag_or_digest)

    @property
    def name(self) -> str:
        """Image name the way Docker displays it locally (no tag)."""
        if self.registry == DEFAULT_REGISTRY:
            prefix = f"{DEFAULT_NAMESPACE}/"
            if self.repository.startswith(prefix):
                return self.repository[len(prefix):]
            return self.repository
        return f"{self.registry}/{self.repository}"

    @property
    def local_ref(self) -> str:
        """Fully-qualified reference used to look the image up in the engine."""
        separator = "@" if self.is_digest_pinned else ":"
        return f"{self.name}{separator}{self.tag_or_digest}"

    def __str__(self) -> str:
        separator = "@" if self.is_digest_pinned else ":"
        return f"{self.registry}/{self.repository}{separator}{self.tag_or_digest}"


def _is_registry_host(component: str) -> bool:
    """A first path component is a registry if it has a dot, a port or is localhost."""
    return '.' in component or ':' in component or component == 'localhost'


def normalize_image(image: str) -> ImageReference:
    """
    Normalize an image reference.

    Args:
        image: Reference as written in a compose file after substitution
               (e.g. 'nginx', 'redis:7-alpine', 'ghcr.io/org/app:v1.0',
               'postgres@sha256:...')

    Returns:
        ImageReference with registry, repository and tag or digest
    """
    image = image.strip()
    tag = DEFAULT_TAG
    pinned = False

    digest_match = _DIGEST.search(image)
    if digest_match:
        tag = digest_match.group(1)
        pinned = True
        image = image[:digest_match.start()]

    # A tag colon only counts after the last slash (not registry:port)
    last_slash = image.rfind('/')
    last_colon = image.rfind(':')
    if last_colon > last_slash:
        if not pinned and image[last_colon + 1:]:
            tag = image[last_colon + 1:]
        image = image[:last_colon]

    if '/' not in image:
        return ImageReference(DEFAULT_REGISTRY, f"{DEFAULT_NAMESPACE}/{image}", tag, pinned)

    first, remaining = image.split('/', 1)
    if _is_registry_host(first):
        registry, repository = first, remaining
    else:
        registry, repository = DEFAULT_REGISTRY, image

    if registry in DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY
        if '/' not in repository:
            repository = f"{DEFAULT_NAMESPACE}/{repository}"

    return ImageReference(registry, repository, tag, pinned)


# ---------------------------------------------------------------------------
# Tag classification
# ---------------------------------------------------------------------------

def is_upgradeable(tag: str) -> bool:
    """Return True when *tag* is expected to move to newer content.

    Mutable names and major / major.minor versions are upgradeable, a full
    X.Y.Z version is pinned.  Suffixed tags such as ``7-alpine`` are judged
    by the part before the first dash.  Unrecognized shapes default to True.
    """
    while True:
        if tag in MUTABLE_TAGS:
            return True
        if _MAJOR_ONLY.match(tag) or _MAJOR_MINOR.match(tag):
            return True
        if _FULL_SEMVER.match(tag):
            return False
        base = tag.split('-', 1)[0]
        if base == tag:
            return True
        tag = base
