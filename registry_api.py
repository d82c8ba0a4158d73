"""Container registry client for manifest digest lookups.

Every HTTP call goes through :meth:`RegistryClient._request`, which never
raises for network or HTTP failures.  Instead each call returns a
:class:`LookupResult` carrying either a value or a classified error code,
so one unreachable registry only affects the services that use it.
"""

import json
import logging
import os
import socket
import ssl
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import requests

from image_ref import DEFAULT_REGISTRY, ImageReference

logger = logging.getLogger(__name__)

# Constants
DOCKER_HUB_API = "registry-1.docker.io"
DOCKER_HUB_AUTH_URL = "https://auth.docker.io/token"
GHCR_REGISTRY = "ghcr.io"
GHCR_AUTH_URL = "https://ghcr.io/token"
CONNECT_TIMEOUT = 10
READ_TIMEOUT = 20
# Wall-clock limit for one HTTP exchange, body included
TOTAL_TIMEOUT = 20
MANIFEST_ACCEPT_HEADER = (
    "application/vnd.docker.distribution.manifest.v2+json,"
    "application/vnd.docker.distribution.manifest.list.v2+json,"
    "application/vnd.oci.image.index.v1+json,"
    "application/vnd.oci.image.manifest.v1+json"
)

# Error codes
DNS_ERROR = "dns_error"
CONNECTION_REFUSED = "connection_refused"
TIMEOUT = "timeout"
SSL_ERROR = "ssl_error"
NO_RESPONSE = "no_response"
UNAUTHORIZED = "unauthorized"
FORBIDDEN = "forbidden"
NOT_FOUND = "not_found"
RATE_LIMITED = "rate_limited"
SERVER_ERROR = "server_error"
MALFORMED_TOKEN = "malformed_token"
NO_DIGEST_IN_RESPONSE = "no_digest_in_response"

_STATUS_ERRORS = {
    401: UNAUTHORIZED,
    403: FORBIDDEN,
    404: NOT_FOUND,
    429: RATE_LIMITED,
}

_DNS_MESSAGES = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "failed to resolve",
)

# (message, hint) per error code; registry-specific hints override the default
ERROR_DESCRIPTIONS: Dict[str, Tuple[str, str]] = {
    TIMEOUT: ("Connection timed out", "Registry may be slow or unreachable"),
    DNS_ERROR: ("DNS resolution failed", "Check network connectivity and registry hostname"),
    CONNECTION_REFUSED: ("Connection refused", "Registry may be down or port blocked"),
    SSL_ERROR: ("SSL/TLS handshake failed", "Check certificate validity"),
    UNAUTHORIZED: ("Authentication required (401)", "Registry requires authentication"),
    FORBIDDEN: ("Access denied (403)", "Check credentials and repository permissions"),
    NOT_FOUND: ("Image not found (404)", "Check image name and tag are correct"),
    RATE_LIMITED: ("Rate limit exceeded (429)", "Wait and retry, or authenticate for higher limits"),
    SERVER_ERROR: ("Registry server error (5xx)", "Temporary issue, retry later"),
    MALFORMED_TOKEN: ("Token endpoint returned no usable token", "Registry may require authentication"),
    NO_DIGEST_IN_RESPONSE: ("Registry did not return a digest", "Registry may not support digest lookups"),
}
_REGISTRY_HINTS = {
    (UNAUTHORIZED, GHCR_REGISTRY): "Set GITHUB_TOKEN for authenticated access",
    (RATE_LIMITED, DEFAULT_REGISTRY): "Docker Hub limits unauthenticated pulls. Try logging in.",
}
_FALLBACK_DESCRIPTION = ("Could not reach registry or get manifest", "Registry may require authentication")
_FALLBACK_HINTS = {
    GHCR_REGISTRY: "Try setting GITHUB_TOKEN for authenticated access",
    DEFAULT_REGISTRY: "Check network or Docker Hub rate limits",
}


@dataclass(frozen=True)
class RegistryCredential:
    """Short-lived bearer token for one repository."""
    provider: str
    bearer_token: str


@dataclass
class LookupResult:
    """Outcome of a single registry call: a value or an error code."""
    value: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RegistryResponse:
    """What the request primitive recorded about one HTTP exchange."""
    status_code: Optional[int] = None
    body: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def classify_status(status_code: int) -> Optional[str]:
    """Map an HTTP status to an error code, or None for 2xx."""
    if 200 <= status_code < 300:
        return None
    if status_code in _STATUS_ERRORS:
        return _STATUS_ERRORS[status_code]
    if 500 <= status_code < 600:
        return SERVER_ERROR
    return f"http_{status_code}"


def _exception_chain(exc: BaseException):
    """Yield exc and everything it wraps (causes, contexts, urllib3 reasons, args)."""
    seen = set()
    pending = [exc]
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        pending.append(current.__cause__)
        pending.append(current.__context__)
        pending.append(getattr(current, 'reason', None))
        pending.extend(arg for arg in current.args if isinstance(arg, BaseException))


def classify_exception(exc: requests.RequestException) -> str:
    """Map a requests exception to a transport error code."""
    if isinstance(exc, requests.exceptions.SSLError):
        return SSL_ERROR
    if isinstance(exc, requests.exceptions.Timeout):
        return TIMEOUT

    for inner in _exception_chain(exc):
        if isinstance(inner, socket.gaierror):
            return DNS_ERROR
        if isinstance(inner, ConnectionRefusedError):
            return CONNECTION_REFUSED
        if isinstance(inner, ssl.SSLError):
            return SSL_ERROR
        if isinstance(inner, socket.timeout):
            return TIMEOUT
        if type(inner).__name__ == 'NameResolutionError':
            return DNS_ERROR

    message = str(exc).lower()
    if any(text in message for text in _DNS_MESSAGES):
        return DNS_ERROR
    if "connection refused" in message:
        return CONNECTION_REFUSED
    return NO_RESPONSE


def describe_error(error: str, registry: str) -> Tuple[str, str]:
    """Return a (message, hint) pair explaining an error code to a user."""
    message, hint = ERROR_DESCRIPTIONS.get(error, (None, None))
    if message is None:
        message = _FALLBACK_DESCRIPTION[0]
        hint = _FALLBACK_HINTS.get(registry, _FALLBACK_DESCRIPTION[1])
    return message, _REGISTRY_HINTS.get((error, registry), hint)


class RegistryClient:
    """Fetches remote manifest digests from Docker Hub, GHCR and other registries."""

    def __init__(self, github_token: Optional[str] = None,
                 connect_timeout: float = CONNECT_TIMEOUT,
                 read_timeout: float = READ_TIMEOUT,
                 total_timeout: float = TOTAL_TIMEOUT):
        if github_token is None:
            github_token = os.environ.get('GITHUB_TOKEN', '').strip() or None
        self.github_token = github_token
        # requests applies the read timeout per socket read, so the body is
        # streamed and checked against total_timeout as it arrives
        self.timeout = (connect_timeout, read_timeout)
        self.total_timeout = total_timeout

    def _request(self, method: str, url: str,
                 headers: Optional[Dict[str, str]] = None) -> RegistryResponse:
        """Perform one HTTP call and classify any failure.

        This is the only place that talks to the network.  The exchange is
        abandoned with a ``timeout`` error once ``total_timeout`` seconds
        have passed.
        """
        deadline = time.monotonic() + self.total_timeout
        try:
            response = requests.request(method, url, headers=headers or {},
                                        timeout=self.timeout, stream=True)
        except requests.RequestException as e:
            error = classify_exception(e)
            logger.debug(f"{method} {url} failed ({error}): {e}")
            return RegistryResponse(error=error)

        try:
            if time.monotonic() > deadline:
                logger.debug(f"{method} {url} exceeded {self.total_timeout}s")
                return RegistryResponse(error=TIMEOUT)

            chunks = []
            if method != 'HEAD':
                for chunk in response.iter_content(chunk_size=8192):
                    chunks.append(chunk)
                    if time.monotonic() > deadline:
                        logger.debug(f"{method} {url} exceeded {self.total_timeout}s")
                        return RegistryResponse(error=TIMEOUT)
        except requests.RequestException as e:
            error = classify_exception(e)
            logger.debug(f"{method} {url} failed while reading ({error}): {e}")
            return RegistryResponse(error=error)
        finally:
            response.close()

        error = classify_status(response.status_code)
        if error:
            logger.debug(f"{method} {url} returned HTTP {response.status_code}")
        return RegistryResponse(
            status_code=response.status_code,
            body=b"".join(chunks).decode(response.encoding or 'utf-8', errors='replace'),
            headers=dict(response.headers),
            error=error,
        )

    def _fetch_anonymous_token(self, auth_url: str, service: str,
                               repository: str) -> LookupResult:
        url = f"{auth_url}?service={service}&scope=repository:{repository}:pull"
        response = self._request('GET', url)
        if not response.ok:
            return LookupResult(error=response.error, status_code=response.status_code)

        try:
            data = json.loads(response.body)
        except ValueError:
            return LookupResult(error=MALFORMED_TOKEN, status_code=response.status_code)

        token = (data.get('token') or data.get('access_token')) if isinstance(data, dict) else None
        if not token or not isinstance(token, str):
            return LookupResult(error=MALFORMED_TOKEN, status_code=response.status_code)
        return LookupResult(value=token, status_code=response.status_code)

    def get_credential(self, registry: str, repository: str) -> Tuple[Optional[RegistryCredential], Optional[str]]:
        """
        Get a pull credential for a repository.

        Args:
            registry: Normalized registry host
            repository: Repository path (e.g. 'library/nginx')

        Returns:
            Tuple of (credential or None, error code or None).  Registries
            other than Docker Hub and GHCR get (None, None): no auth is tried.
        """
        if registry == DEFAULT_REGISTRY:
            result = self._fetch_anonymous_token(DOCKER_HUB_AUTH_URL, "registry.docker.io", repository)
        elif registry == GHCR_REGISTRY:
            if self.github_token:
                return RegistryCredential(GHCR_REGISTRY, self.github_token), None
            result = self._fetch_anonymous_token(GHCR_AUTH_URL, GHCR_REGISTRY, repository)
        else:
            return None, None

        if not result.ok:
            return None, result.error
        return RegistryCredential(registry, result.value), None

    def get_remote_digest(self, ref: ImageReference) -> LookupResult:
        """
        Get the manifest digest the registry currently serves for a reference.

        Digest-pinned references are answered from the reference itself.

        Args:
            ref: Normalized image reference

        Returns:
            LookupResult with the ``sha256:...`` digest or an error code
        """
        if ref.is_digest_pinned:
            return LookupResult(value=ref.digest)

        credential, error = self.get_credential(ref.registry, ref.repository)
        if error:
            logger.debug(f"Token request for {ref.registry}/{ref.repository} failed: {error}")
            return LookupResult(error=error)

        host = DOCKER_HUB_API if ref.registry == DEFAULT_REGISTRY else ref.registry
        url = f"https://{host}/v2/{ref.repository}/manifests/{ref.tag_or_digest}"
        headers = {'Accept': MANIFEST_ACCEPT_HEADER}
        if credential:
            headers['Authorization'] = f'Bearer {credential.bearer_token}'

        response = self._request('HEAD', url, headers)
        if not response.ok:
            return LookupResult(error=response.error, status_code=response.status_code)

        digest = None
        for key, value in response.headers.items():
            if key.lower() == 'docker-content-digest':
                digest = value.strip()
                break
        if not digest:
            return LookupResult(error=NO_DIGEST_IN_RESPONSE, status_code=response.status_code)
        return LookupResult(value=digest, status_code=response.status_code)
