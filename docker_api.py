"""Docker Engine API client over Unix socket.

Used to read what the local engine already has (image digests) without
shelling out to the Docker CLI.  Uses only Python stdlib (http.client,
socket).
"""

import http.client
import json
import logging
import os
import socket
import urllib.parse
from typing import Any, Dict, Optional

from image_ref import ImageReference, normalize_image

logger = logging.getLogger(__name__)

# Docker Engine API version, compatible with Docker 20.10+
API_VERSION = "v1.41"
DEFAULT_SOCKET = "/var/run/docker.sock"


class DockerAPIError(Exception):
    """Error from the Docker Engine API (status 0 means the engine was unreachable)."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Docker API error {status}: {message}")


class UnixHTTPConnection(http.client.HTTPConnection):
    """HTTPConnection subclass that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: int = 30):
        # host is unused for the actual connection but required by HTTPConnection
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self._socket_path)


class DockerClient:
    """Read-only client for the Docker Engine API over Unix socket."""

    def __init__(self, socket_path: Optional[str] = None):
        if socket_path is None:
            host = os.environ.get("DOCKER_HOST", "")
            if host.startswith("unix://"):
                socket_path = host[len("unix://"):]
            else:
                socket_path = DEFAULT_SOCKET
        self._socket_path = socket_path

    def _request(self, method: str, path: str,
                 query: Optional[Dict[str, str]] = None,
                 timeout: int = 30) -> Any:
        """Send an HTTP request to the Docker Engine API.

        Creates a fresh connection per call so the client can be shared
        between worker threads.  Returns parsed JSON, or None for an empty
        body.
        """
        url = f"/{API_VERSION}{path}"
        if query:
            url += "?" + urllib.parse.urlencode(query)

        conn = UnixHTTPConnection(self._socket_path, timeout=timeout)
        try:
            try:
                conn.request(method, url)
                response = conn.getresponse()
                raw = response.read().decode("utf-8", errors="replace")
            except OSError as e:
                raise DockerAPIError(0, f"cannot reach Docker engine at {self._socket_path}: {e}")

            if response.status >= 400:
                # Try to extract message from JSON error body
                try:
                    err = json.loads(raw)
                    msg = err.get("message", raw)
                except (json.JSONDecodeError, AttributeError):
                    msg = raw
                raise DockerAPIError(response.status, msg)

            if not raw:
                return None

            return json.loads(raw)
        finally:
            conn.close()

    def inspect_image(self, image_ref: str) -> Optional[Dict[str, Any]]:
        """Inspect a local image (equivalent to ``docker image inspect``).

        Returns None when the image is not present locally.
        """
        quoted = urllib.parse.quote(image_ref, safe="/:@")
        try:
            return self._request("GET", f"/images/{quoted}/json")
        except DockerAPIError as e:
            if e.status == 404:
                return None
            raise

    def local_digest(self, ref: ImageReference) -> str:
        """Return the registry digest of the locally pulled image.

        Picks the ``RepoDigests`` entry belonging to the same repository,
        falling back to the first entry.  Returns an empty string when the
        image was never pulled (or was built locally and has no digest).
        """
        info = self.inspect_image(ref.local_ref)
        if not info:
            return ""

        repo_digests = info.get("RepoDigests") or []
        fallback = ""
        for entry in repo_digests:
            if "@" not in entry:
                continue
            name, digest = entry.rsplit("@", 1)
            if not fallback:
                fallback = digest
            other = normalize_image(name)
            if other.registry == ref.registry and other.repository == ref.repository:
                return digest

        if fallback:
            logger.debug(f"No RepoDigest for {ref.local_ref} matched its repository, using {fallback}")
        return fallback
