"""Tests for local digest lookups through the Docker Engine API."""

import pytest
from unittest.mock import patch

from docker_api import DEFAULT_SOCKET, DockerAPIError, DockerClient
from image_ref import normalize_image
from tests.conftest import DIGEST_A, DIGEST_B


@pytest.fixture
def docker():
    return DockerClient("/tmp/test.sock")


class TestSocketPath:

    def test_default(self, monkeypatch):
        monkeypatch.delenv("DOCKER_HOST", raising=False)
        assert DockerClient()._socket_path == DEFAULT_SOCKET

    def test_docker_host(self, monkeypatch):
        monkeypatch.setenv("DOCKER_HOST", "unix:///run/user/1000/docker.sock")
        assert DockerClient()._socket_path == "/run/user/1000/docker.sock"

    def test_tcp_docker_host_ignored(self, monkeypatch):
        monkeypatch.setenv("DOCKER_HOST", "tcp://10.0.0.2:2375")
        assert DockerClient()._socket_path == DEFAULT_SOCKET


class TestInspectImage:

    def test_not_found_returns_none(self, docker):
        with patch.object(docker, "_request", side_effect=DockerAPIError(404, "No such image")):
            assert docker.inspect_image("nginx:latest") is None

    def test_other_errors_propagate(self, docker):
        with patch.object(docker, "_request", side_effect=DockerAPIError(500, "boom")):
            with pytest.raises(DockerAPIError):
                docker.inspect_image("nginx:latest")

    def test_path_quoted(self, docker):
        with patch.object(docker, "_request", return_value={}) as mock_request:
            docker.inspect_image("ghcr.io/acme/api:main")
        mock_request.assert_called_once_with("GET", "/images/ghcr.io/acme/api:main/json")

    def test_unreachable_engine(self, docker):
        with pytest.raises(DockerAPIError) as exc_info:
            docker.inspect_image("nginx:latest")
        assert exc_info.value.status == 0


class TestLocalDigest:

    def test_never_pulled(self, docker):
        with patch.object(docker, "inspect_image", return_value=None):
            assert docker.local_digest(normalize_image("nginx")) == ""

    def test_locally_built_has_no_digests(self, docker):
        with patch.object(docker, "inspect_image", return_value={"RepoDigests": []}):
            assert docker.local_digest(normalize_image("acme/app:dev")) == ""

    def test_uses_local_reference(self, docker):
        with patch.object(docker, "inspect_image", return_value=None) as mock_inspect:
            docker.local_digest(normalize_image("nginx"))
        mock_inspect.assert_called_once_with("nginx:latest")

    def test_matching_repository_preferred(self, docker):
        info = {"RepoDigests": [f"mirror.local/nginx@{DIGEST_B}", f"nginx@{DIGEST_A}"]}
        with patch.object(docker, "inspect_image", return_value=info):
            assert docker.local_digest(normalize_image("nginx:latest")) == DIGEST_A

    def test_fully_qualified_entry_matches(self, docker):
        info = {"RepoDigests": [f"ghcr.io/acme/api@{DIGEST_B}"]}
        with patch.object(docker, "inspect_image", return_value=info):
            assert docker.local_digest(normalize_image("ghcr.io/acme/api:main")) == DIGEST_B

    def test_falls_back_to_first_entry(self, docker):
        info = {"RepoDigests": [f"other/name@{DIGEST_B}", f"another/name@{DIGEST_A}"]}
        with patch.object(docker, "inspect_image", return_value=info):
            assert docker.local_digest(normalize_image("acme/app")) == DIGEST_B
