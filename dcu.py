#!/usr/bin/env python3
"""
Docker Compose Update checker and safe upgrader

Compares the image digests of a compose project's local images with what
their registries currently serve, and upgrades the services that use
mutable tags (latest, main, 15, 1.25, ...) in a failure-safe order.
"""

__version__ = "1.0.0"

import json
import sys
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional
import argparse
import os
import jsonschema

from compose_cli import ComposeCLI, ComposeError
from compose_parser import (
    DEFAULT_SCAN_DEPTH, ComposeProject, ServiceImageBinding, find_compose_file,
    load_env_file, read_compose_services, scan_compose_files,
)
from docker_api import DockerAPIError, DockerClient
from image_ref import ImageReference, normalize_image, resolve_env_vars
from registry_api import (
    CONNECT_TIMEOUT, READ_TIMEOUT, TOTAL_TIMEOUT, LookupResult, RegistryClient, describe_error,
)
from upgrade import UpgradeOrchestrator, UpgradeOutcome, UpgradePlan, build_plan


# Constants
DEFAULT_MAX_WORKERS = 8
ENV_FILE_NAME = ".env"
ENGINE_UNAVAILABLE = "engine_unavailable"
ENGINE_ERROR = "engine_error"
ENGINE_HINTS = {
    ENGINE_UNAVAILABLE: "Check that the Docker daemon is running and accessible",
    ENGINE_ERROR: "Docker rejected the image lookup. Check the resolved image reference",
}

# Statuses
PINNED = "PINNED"
NOT_PULLED = "NOT_PULLED"
CURRENT = "CURRENT"
UPDATE = "UPDATE"
ERROR = "ERROR"
STATUSES = (PINNED, NOT_PULLED, CURRENT, UPDATE, ERROR)

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "projects": {
            "type": "array",
            "items": {"type": "string"}
        },
        "max_workers": {"type": "integer", "minimum": 1},
        "connect_timeout": {"type": "number", "exclusiveMinimum": 0},
        "read_timeout": {"type": "number", "exclusiveMinimum": 0},
        "total_timeout": {"type": "number", "exclusiveMinimum": 0},
        "headless": {"type": "boolean"},
        "scan_depth": {"type": "integer", "minimum": 1}
    },
    "additionalProperties": False
}


@dataclass
class DigestComparisonResult:
    """Update status of one compose service."""
    service_name: str
    resolved_image: str
    status: str
    upgradeable: bool
    local_digest: Optional[str] = None
    remote_digest: Optional[str] = None
    error: Optional[str] = None
    hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'name': self.service_name,
            'image': self.resolved_image,
            'local_digest': self.local_digest or None,
            'remote_digest': self.remote_digest or None,
            'status': self.status,
            'upgradeable': self.upgradeable,
        }
        if self.error:
            data['error'] = self.error
            data['hint'] = self.hint
        return data


@dataclass
class CheckReport:
    """Per-service results for one compose project, in manifest order."""
    path: str
    compose_file: str
    services: List[DigestComparisonResult]

    @property
    def summary(self) -> Dict[str, int]:
        counts = {status.lower(): 0 for status in STATUSES}
        for result in self.services:
            counts[result.status.lower()] += 1
        counts['total'] = len(self.services)
        return counts

    @property
    def has_updates(self) -> bool:
        return any(r.status in (UPDATE, NOT_PULLED) for r in self.services)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'compose_file': self.compose_file,
            'services': [r.to_dict() for r in self.services],
            'summary': self.summary,
        }


def compare_digests(service_name: str, resolved_image: str, ref: ImageReference,
                    local_digest: Optional[str], remote: LookupResult,
                    local_error: Optional[str] = None) -> DigestComparisonResult:
    """
    Decide the update status of one service.

    Args:
        service_name: Compose service name
        resolved_image: Image reference after variable substitution
        ref: Normalized form of resolved_image
        local_digest: Digest of the local image ('' or None if never pulled)
        remote: Result of the registry lookup
        local_error: Error code if the local engine could not be asked

    Returns:
        DigestComparisonResult
    """
    if ref.is_digest_pinned:
        return DigestComparisonResult(service_name, resolved_image, PINNED, False,
                                      local_digest=ref.digest, remote_digest=ref.digest)

    upgradeable = ref.upgradeable
    # A pinned tag is never upgraded, so lookup failures leave it PINNED
    failed_status = ERROR if upgradeable else PINNED

    if not remote.ok:
        _, hint = describe_error(remote.error, ref.registry)
        return DigestComparisonResult(service_name, resolved_image, failed_status, upgradeable,
                                      local_digest=local_digest or None,
                                      error=remote.error, hint=hint)

    if local_error:
        return DigestComparisonResult(service_name, resolved_image, failed_status, upgradeable,
                                      remote_digest=remote.value, error=local_error,
                                      hint=ENGINE_HINTS.get(local_error))

    if not local_digest:
        return DigestComparisonResult(service_name, resolved_image, NOT_PULLED, upgradeable,
                                      remote_digest=remote.value)

    if not upgradeable:
        return DigestComparisonResult(service_name, resolved_image, PINNED, False,
                                      local_digest=local_digest, remote_digest=remote.value)

    status = CURRENT if local_digest == remote.value else UPDATE
    return DigestComparisonResult(service_name, resolved_image, status, True,
                                  local_digest=local_digest, remote_digest=remote.value)


class ComposeUpdateChecker:
    def __init__(self, config_file: Optional[str] = None, log_level: str = "INFO",
                 max_workers: Optional[int] = None,
                 registry: Optional[RegistryClient] = None,
                 docker: Optional[DockerClient] = None,
                 cli_factory: Optional[Callable[[Path, Path], ComposeCLI]] = None):
        """
        Initialize the checker.

        Args:
            config_file: Optional path to a JSON configuration file
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
            max_workers: Parallel registry lookups (overrides the config file)
            registry: Registry client (built from config when omitted)
            docker: Docker Engine client used for local digests
            cli_factory: Builds a ComposeCLI for (project_dir, compose_file)
        """
        self.config_file = Path(config_file) if config_file else None

        # Setup logging
        self.logger = self._setup_logging(log_level)

        self.config = self._load_config()
        self.max_workers = max_workers or self.config.get('max_workers', DEFAULT_MAX_WORKERS)
        self.headless = (self.config.get('headless', False) or
                         os.environ.get('DCU_HEADLESS', '') in ('1', 'true', 'True'))

        self.registry = registry or RegistryClient(
            connect_timeout=self.config.get('connect_timeout', CONNECT_TIMEOUT),
            read_timeout=self.config.get('read_timeout', READ_TIMEOUT),
            total_timeout=self.config.get('total_timeout', TOTAL_TIMEOUT),
        )
        self.docker = docker or DockerClient()
        self.cli_factory = cli_factory or ComposeCLI

    def _setup_logging(self, level: str) -> logging.Logger:
        """Setup logging configuration."""
        logger = logging.getLogger('dcu')
        logger.setLevel(getattr(logging, level.upper()))
        logger.propagate = False

        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S %Z'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    def _load_config(self) -> Dict[str, Any]:
        """Load and validate the optional configuration file."""
        if not self.config_file:
            return {}
        try:
            with open(self.config_file, 'r') as f:
                config = json.load(f)

            jsonschema.validate(config, CONFIG_SCHEMA)
            return config

        except FileNotFoundError:
            self.logger.error(f"Config file {self.config_file} not found")
            raise
        except json.JSONDecodeError as e:
            self.logger.error(f"Error parsing config file: {e}")
            raise
        except jsonschema.ValidationError as e:
            self.logger.error(f"Configuration validation failed: {e.message}")
            raise

    @property
    def projects(self) -> List[str]:
        return list(self.config.get('projects', []))

    @property
    def scan_depth(self) -> int:
        return self.config.get('scan_depth', DEFAULT_SCAN_DEPTH)

    def _load_project(self, path: str):
        """Locate the compose file, its bindings and .env values for a project directory."""
        project_dir = Path(path).resolve()
        compose_file = find_compose_file(project_dir)
        if not compose_file:
            raise ComposeError("compose_not_found", f"No docker-compose.yml found in {project_dir}",
                               str(project_dir))

        bindings = read_compose_services(compose_file)
        if not bindings:
            raise ComposeError("no_services", f"No services with images found in {compose_file}",
                               str(project_dir))

        env_vars = load_env_file(project_dir / ENV_FILE_NAME)
        return project_dir, compose_file, bindings, env_vars

    def _check_service(self, binding: ServiceImageBinding,
                       env_vars: Mapping[str, str]) -> DigestComparisonResult:
        """Resolve, look up and compare one service (runs on a worker thread)."""
        resolved = resolve_env_vars(binding.raw_image_reference, env_vars)
        ref = normalize_image(resolved)

        if ref.is_digest_pinned:
            return compare_digests(binding.service_name, resolved, ref, ref.digest,
                                   LookupResult(value=ref.digest))

        local_digest, local_error = "", None
        try:
            local_digest = self.docker.local_digest(ref)
        except DockerAPIError as e:
            self.logger.warning(f"Could not read local digest of {ref.local_ref}: {e.message}")
            # Status 0 means the socket could not be reached at all
            local_error = ENGINE_UNAVAILABLE if e.status == 0 else ENGINE_ERROR

        remote = self.registry.get_remote_digest(ref)
        return compare_digests(binding.service_name, resolved, ref, local_digest, remote, local_error)

    def check(self, path: str = ".", progress_callback=None) -> CheckReport:
        """Check every service of a compose project for available updates.

        Args:
            path: Directory containing the compose file
            progress_callback: Optional function(event_type, data) called for progress updates

        Raises:
            ComposeError: no compose file, or no services with images
        """
        project_dir, compose_file, bindings, env_vars = self._load_project(path)
        self.logger.info(f"Checking {compose_file} ({len(bindings)} service(s))")

        results: List[Optional[DigestComparisonResult]] = [None] * len(bindings)
        max_workers = max(1, min(self.max_workers, len(bindings)))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(self._check_service, binding, env_vars): idx
                for idx, binding in enumerate(bindings)
            }
            for future in as_completed(futures):
                idx = futures[future]
                result = future.result()
                results[idx] = result
                self.logger.debug(f"{result.service_name}: {result.status}")
                if progress_callback:
                    progress_callback('service_checked', {
                        'progress': sum(r is not None for r in results),
                        'total': len(bindings),
                        'service': result.to_dict(),
                    })

        report = CheckReport(str(project_dir), compose_file.name, results)
        self._log_report(report)
        return report

    def _log_report(self, report: CheckReport) -> None:
        for result in report.services:
            self.logger.info(f"{result.service_name:<15} {result.resolved_image:<40} {result.status}")
            if not result.error:
                continue
            if result.error == ENGINE_UNAVAILABLE:
                self.logger.warning(f"{result.service_name}: Docker engine unreachable. Hint: {result.hint}")
            elif result.error == ENGINE_ERROR:
                self.logger.warning(f"{result.service_name}: Docker engine lookup of "
                                    f"{result.resolved_image!r} failed. Hint: {result.hint}")
            else:
                ref = normalize_image(result.resolved_image)
                message, _ = describe_error(result.error, ref.registry)
                self.logger.warning(
                    f"{result.service_name} ({result.resolved_image}) on {ref.registry}: "
                    f"{message}. Hint: {result.hint}"
                )

        summary = report.summary
        self.logger.info(
            "Summary: " + ", ".join(f"{summary[s.lower()]} {s.lower()}" for s in STATUSES)
        )
        if report.has_updates:
            self.logger.info("Run 'dcu upgrade' to update services with mutable tags.")

    def scan(self, base_dir: str = ".", max_depth: Optional[int] = None) -> List[ComposeProject]:
        """Find compose projects below base_dir."""
        depth = max_depth if max_depth is not None else self.scan_depth
        projects = scan_compose_files(base_dir, depth)
        self.logger.info(f"Found {len(projects)} compose file(s) in {Path(base_dir).resolve()} (depth: {depth})")
        return projects

    def plan_upgrade(self, path: str = ".", dry_run: bool = False,
                     force: bool = False) -> UpgradePlan:
        """Plan an upgrade without touching any container."""
        _, _, bindings, env_vars = self._load_project(path)
        return build_plan(bindings, env_vars, dry_run=dry_run, force=force)

    def upgrade(self, path: str = ".", dry_run: bool = False, force: bool = False,
                assume_yes: bool = False, confirm=None) -> UpgradeOutcome:
        """
        Upgrade services with mutable tags (or all services with force).

        Args:
            path: Directory containing the compose file
            dry_run: Only report what would be run
            force: Also upgrade pinned versions
            assume_yes: Skip the confirmation prompt
            confirm: Optional function(question) -> bool replacing the stdin prompt

        Returns:
            UpgradeOutcome describing where the run ended
        """
        project_dir, compose_file, bindings, env_vars = self._load_project(path)
        plan = build_plan(bindings, env_vars, dry_run=dry_run, force=force)

        if dry_run:
            self.logger.info("=== DRY RUN MODE ===")

        cli = self.cli_factory(project_dir, compose_file)
        orchestrator = UpgradeOrchestrator(cli, headless=self.headless or assume_yes, confirm=confirm)
        return orchestrator.run(plan)


def main():
    parser = argparse.ArgumentParser(
        description='Docker Compose image update checker and safe upgrader'
    )
    parser.add_argument(
        '--config',
        default=os.environ.get('CONFIG_FILE'),
        help='Path to configuration JSON file (env: CONFIG_FILE)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument(
        '--workers',
        type=int,
        default=int(os.environ['DCU_WORKERS']) if os.environ.get('DCU_WORKERS') else None,
        help=f'Parallel registry lookups (env: DCU_WORKERS, default: {DEFAULT_MAX_WORKERS})'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command', required=True)

    check_parser = subparsers.add_parser('check', help='Check compose services for image updates')
    check_parser.add_argument('path', nargs='?', default='.', help='Project directory (default: .)')
    check_parser.add_argument('--json', action='store_true', help='Print the report as JSON')

    upgrade_parser = subparsers.add_parser('upgrade', help='Upgrade services with mutable tags')
    upgrade_parser.add_argument('path', nargs='?', default='.', help='Project directory (default: .)')
    upgrade_parser.add_argument(
        '--dry-run', '-n',
        action='store_true',
        default=os.environ.get('DRY_RUN', '').lower() == 'true',
        help='Show what would be done without making any changes (env: DRY_RUN)'
    )
    upgrade_parser.add_argument('--force', '-f', action='store_true',
                                help='Upgrade pinned versions too')
    upgrade_parser.add_argument('--yes', '-y', action='store_true',
                                help='Do not ask for confirmation (env: DCU_HEADLESS=1)')
    upgrade_parser.add_argument('--json', action='store_true', help='Print the outcome as JSON')

    scan_parser = subparsers.add_parser('scan', help='Find compose projects below a directory')
    scan_parser.add_argument('base_dir', nargs='?', default='.', help='Base directory (default: .)')
    scan_parser.add_argument('--depth', '-d', type=int, default=None,
                             help=f'Maximum search depth (default: {DEFAULT_SCAN_DEPTH})')
    scan_parser.add_argument('--json', action='store_true', help='Print the result as JSON')

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S %Z'
    )

    try:
        checker = ComposeUpdateChecker(args.config, args.log_level, args.workers)

        if args.command == 'check':
            report = checker.check(args.path)
            if args.json:
                print(json.dumps(report.to_dict(), indent=2))

        elif args.command == 'upgrade':
            outcome = checker.upgrade(args.path, dry_run=args.dry_run, force=args.force,
                                      assume_yes=args.yes)
            if args.json:
                print(json.dumps(outcome.to_dict(), indent=2))
            if not outcome.success:
                sys.exit(1)

        elif args.command == 'scan':
            projects = checker.scan(args.base_dir, args.depth)
            if args.json:
                print(json.dumps({
                    'base_path': str(Path(args.base_dir).resolve()),
                    'depth': args.depth if args.depth is not None else checker.scan_depth,
                    'compose_files': [p.to_dict() for p in projects],
                    'total_found': len(projects),
                }, indent=2))
            else:
                for project in projects:
                    checker.logger.info(f"{project.path}: {', '.join(project.services) or '(no image services)'}")

    except ComposeError as e:
        if getattr(args, 'json', False):
            print(json.dumps({'error': e.code, 'path': e.path}))
        logging.error(e.message)
        sys.exit(1)
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
