"""Compose file discovery and lightweight parsing.

Only the ``services:`` → ``image:`` lines of a compose file are read; this is
deliberately not a YAML parser.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)

# Recognized compose file names, in lookup priority order
COMPOSE_FILENAMES = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)
DEFAULT_SCAN_DEPTH = 3

_SERVICES_KEY = re.compile(r"^services\s*:\s*(#.*)?$")
_SERVICE_KEY = re.compile(r"^  ([A-Za-z0-9_.-]+)\s*:(\s|$)")
_IMAGE_KEY = re.compile(r"^\s{3,}image\s*:\s*(.*)$")
_ENV_LINE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=(.*)$")


@dataclass(frozen=True)
class ServiceImageBinding:
    """A service name paired with the image reference it declares."""
    service_name: str
    raw_image_reference: str


@dataclass
class ComposeProject:
    """A compose file found by a directory scan."""
    path: str
    compose_file: str
    services: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            'path': self.path,
            'file': self.compose_file,
            'services': list(self.services),
        }


def _clean_scalar(value: str) -> str:
    """Strip an inline comment, surrounding quotes and whitespace."""
    value = value.strip()
    if value[:1] in ('"', "'"):
        end = value.find(value[0], 1)
        if end != -1:
            return value[1:end].strip()
    value = re.sub(r"(^|\s+)#.*$", "", value)
    return value.replace('"', '').replace("'", '').strip()


def parse_compose_services(text: str) -> List[ServiceImageBinding]:
    """Extract (service, image) pairs from compose file text, in file order.

    Services that only declare ``build:`` produce no binding.
    """
    bindings: List[ServiceImageBinding] = []
    in_services = False
    current_service: Optional[str] = None

    for raw_line in text.splitlines():
        line = raw_line.rstrip()
        if not line.strip() or line.lstrip().startswith('#'):
            continue

        if not line[0].isspace():
            in_services = bool(_SERVICES_KEY.match(line))
            current_service = None
            continue

        if not in_services:
            continue

        service_match = _SERVICE_KEY.match(line)
        if service_match:
            current_service = service_match.group(1)
            continue

        image_match = _IMAGE_KEY.match(line)
        if image_match and current_service:
            image = _clean_scalar(image_match.group(1))
            if image:
                bindings.append(ServiceImageBinding(current_service, image))

    return bindings


def read_compose_services(compose_file: Union[str, Path]) -> List[ServiceImageBinding]:
    """Read a compose file from disk and return its bindings."""
    with open(compose_file, 'r', encoding='utf-8') as f:
        return parse_compose_services(f.read())


def find_compose_file(path: Union[str, Path]) -> Optional[Path]:
    """Return the compose file in *path*, or None if there is none."""
    directory = Path(path)
    for name in COMPOSE_FILENAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def load_env_file(env_file: Union[str, Path]) -> Dict[str, str]:
    """Load ``KEY=VALUE`` pairs from a .env file.

    Blank lines and ``#`` comments are skipped; one level of surrounding
    single or double quotes is removed from values.  A missing file yields
    an empty dict.
    """
    env_vars: Dict[str, str] = {}
    env_path = Path(env_file)
    if not env_path.is_file():
        return env_vars

    with open(env_path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            match = _ENV_LINE.match(line)
            if not match:
                logger.debug(f"Ignoring malformed line in {env_path}: {line}")
                continue
            key, value = match.group(1), match.group(2)
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]
            env_vars[key] = value

    return env_vars


def scan_compose_files(base_dir: Union[str, Path],
                       max_depth: int = DEFAULT_SCAN_DEPTH) -> List[ComposeProject]:
    """
    Find compose files under a directory.

    Args:
        base_dir: Directory to search
        max_depth: Maximum depth; files directly inside base_dir are depth 1

    Returns:
        ComposeProject list sorted by directory then file name, without duplicates
    """
    base = Path(base_dir).resolve()
    found = set()

    for root, dirs, files in os.walk(base):
        depth = len(Path(root).relative_to(base).parts) + 1
        if depth >= max_depth:
            # Files in this directory are still in range, its children are not
            dirs[:] = []
        if depth > max_depth:
            continue
        for name in files:
            if name in COMPOSE_FILENAMES:
                found.add(Path(root) / name)

    projects = []
    for compose_file in sorted(found, key=lambda p: (str(p.parent), p.name)):
        try:
            services = [b.service_name for b in read_compose_services(compose_file)]
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read {compose_file}: {e}")
            services = []
        projects.append(ComposeProject(
            path=str(compose_file.parent),
            compose_file=compose_file.name,
            services=services,
        ))
    return projects
