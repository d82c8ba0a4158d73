"""Shared fixtures for dcu tests."""

import pytest
from unittest.mock import MagicMock

from dcu import ComposeUpdateChecker
from registry_api import LookupResult

# ---------------------------------------------------------------------------
# Digests and manifests
# ---------------------------------------------------------------------------

DIGEST_A = "sha256:" + "a" * 64
DIGEST_B = "sha256:" + "b" * 64
DIGEST_C = "sha256:" + "c" * 64

WEB_DB_COMPOSE = """\
services:
  web:
    image: nginx:latest
    ports:
      - "80:80"
  db:
    image: postgres:15.3.1
"""

FULL_COMPOSE = """\
version: "3.8"

# Application stack
services:
  web:
    image: "nginx:latest"   # front proxy
  api:
    image: ${REGISTRY:-ghcr.io}/acme/api:${API_TAG:-main}
  worker:
    build: ./worker
  cache:
    image: 'redis:7-alpine'

  db:
    image: postgres@sha256:%s

volumes:
  data:
    image: not-a-service
""" % ("d" * 64)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

def make_registry(digests=None, errors=None):
    """Registry client double answering per repository.

    Args:
        digests: {repository: digest}
        errors: {repository: error_code}
    """
    digests = digests or {}
    errors = errors or {}
    registry = MagicMock()

    def _lookup(ref):
        if ref.is_digest_pinned:
            return LookupResult(value=ref.digest)
        if ref.repository in errors:
            return LookupResult(error=errors[ref.repository])
        if ref.repository in digests:
            return LookupResult(value=digests[ref.repository], status_code=200)
        return LookupResult(error="not_found", status_code=404)

    registry.get_remote_digest.side_effect = _lookup
    return registry


def make_docker(digests=None):
    """Docker client double returning local digests per repository ('' if absent)."""
    digests = digests or {}
    docker = MagicMock()
    docker.local_digest.side_effect = lambda ref: digests.get(ref.repository, "")
    return docker


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the caller's environment out of substitution and headless checks."""
    for name in ("DCU_HEADLESS", "GITHUB_TOKEN", "TAG", "API_TAG", "REGISTRY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project_dir(tmp_path):
    """A compose project with the web/db manifest."""
    (tmp_path / "docker-compose.yml").write_text(WEB_DB_COMPOSE)
    return tmp_path


@pytest.fixture
def make_checker():
    """Factory building a checker around registry/docker doubles."""
    def _make(registry=None, docker=None, cli=None, **kwargs):
        factory = (lambda project_dir, compose_file: cli) if cli is not None else None
        return ComposeUpdateChecker(
            registry=registry or make_registry(),
            docker=docker or make_docker(),
            cli_factory=factory,
            **kwargs
        )
    return _make
