"""Failure-safe upgrade of compose services with mutable image tags.

The run is a small state machine::

    SCAN -> PLAN -> (dry run: REPORT) -> CONFIRM -> PULL -> STOP -> START -> PRUNE -> DONE

A failed pull jumps to ABORTED before anything is stopped, so running
containers are never taken down for an image that could not be fetched.
Phases run one after another; each phase is a single batch call to the
compose CLI covering every selected service.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional

from compose_cli import ComposeCLI, CommandResult
from compose_parser import ServiceImageBinding
from image_ref import normalize_image, resolve_env_vars

logger = logging.getLogger(__name__)

# States
SCAN = "SCAN"
PLAN = "PLAN"
REPORT = "REPORT"
CONFIRM = "CONFIRM"
PULL = "PULL"
STOP = "STOP"
START = "START"
PRUNE = "PRUNE"
DONE = "DONE"
ABORTED = "ABORTED"
FAILED = "FAILED"
CANCELLED = "CANCELLED"


@dataclass
class PlannedService:
    """One binding as seen by the planner."""
    service_name: str
    resolved_image: str
    upgradeable: bool
    selected: bool


@dataclass
class UpgradePlan:
    """Which services an upgrade run will touch."""
    selected_services: List[str]
    dry_run: bool = False
    force: bool = False
    entries: List[PlannedService] = field(default_factory=list)

    @property
    def skipped_services(self) -> List[str]:
        return [e.service_name for e in self.entries if not e.selected]

    def to_dict(self) -> Dict[str, object]:
        return {
            'selected_services': list(self.selected_services),
            'skipped_services': self.skipped_services,
            'dry_run': self.dry_run,
            'force': self.force,
            'services': [
                {
                    'name': e.service_name,
                    'image': e.resolved_image,
                    'upgradeable': e.upgradeable,
                    'selected': e.selected,
                }
                for e in self.entries
            ],
        }


@dataclass
class UpgradeOutcome:
    """Final state of an upgrade run."""
    state: str
    plan: UpgradePlan
    states_visited: List[str] = field(default_factory=list)
    error: Optional[str] = None
    commands: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state in (DONE, REPORT, CANCELLED)

    def to_dict(self) -> Dict[str, object]:
        return {
            'state': self.state,
            'success': self.success,
            'states': list(self.states_visited),
            'error': self.error,
            'commands': list(self.commands),
            'plan': self.plan.to_dict(),
        }


def build_plan(bindings: List[ServiceImageBinding], env_vars: Optional[Mapping[str, str]] = None,
               dry_run: bool = False, force: bool = False,
               environ: Optional[Mapping[str, str]] = None) -> UpgradePlan:
    """Select the services to upgrade: mutable tags only, or everything with *force*."""
    entries = []
    for binding in bindings:
        resolved = resolve_env_vars(binding.raw_image_reference, env_vars, environ)
        upgradeable = normalize_image(resolved).upgradeable
        entries.append(PlannedService(
            service_name=binding.service_name,
            resolved_image=resolved,
            upgradeable=upgradeable,
            selected=force or upgradeable,
        ))
    selected = [e.service_name for e in entries if e.selected]
    return UpgradePlan(selected_services=selected, dry_run=dry_run, force=force, entries=entries)


class UpgradeOrchestrator:
    """Drives pull / stop / start / prune for a planned set of services."""

    def __init__(self, cli: ComposeCLI, headless: bool = False,
                 confirm: Optional[Callable[[str], bool]] = None):
        self.cli = cli
        self.headless = headless
        self.confirm = confirm or _prompt_confirm

    def run(self, plan: UpgradePlan) -> UpgradeOutcome:
        """Execute a plan and return the state the run ended in."""
        outcome = UpgradeOutcome(state=SCAN, plan=plan)
        self._enter(outcome, SCAN)
        self._enter(outcome, PLAN)

        for entry in plan.entries:
            if entry.selected:
                logger.info(f"[UPGRADE] {entry.service_name} ({entry.resolved_image})")
            else:
                logger.info(f"[SKIP] {entry.service_name} ({entry.resolved_image}) - pinned version")

        services = plan.selected_services
        if not services:
            logger.info("No services to upgrade (all pinned). Use --force to upgrade pinned versions.")
            self._enter(outcome, DONE)
            return outcome

        if plan.dry_run:
            self._enter(outcome, REPORT)
            outcome.commands = [
                self.cli.describe("pull", *services),
                self.cli.describe("stop", *services),
                self.cli.describe("up", "-d", "--remove-orphans", *services),
                "docker image prune -f",
            ]
            for command in outcome.commands:
                logger.info(f"[DRY RUN] Would run: {command}")
            return outcome

        if not self.headless:
            self._enter(outcome, CONFIRM)
            if not self.confirm("This will pull new images and restart containers. Proceed with upgrade?"):
                logger.info("Upgrade cancelled.")
                self._enter(outcome, CANCELLED)
                return outcome

        self._enter(outcome, PULL)
        logger.info(f"[1/4] Pulling updated images for: {', '.join(services)}")
        result = self.cli.pull(services)
        if not result.ok:
            logger.error(f"Failed to pull images. Aborting upgrade. {_detail(result)}")
            outcome.error = result.error
            self._enter(outcome, ABORTED)
            return outcome

        self._enter(outcome, STOP)
        logger.info("[2/4] Stopping old containers...")
        result = self.cli.stop(services)
        if not result.ok:
            logger.warning(f"Stopping containers failed, continuing. {_detail(result)}")

        self._enter(outcome, START)
        logger.info("[3/4] Starting updated containers...")
        result = self.cli.up(services)
        if not result.ok:
            logger.error(f"Failed to start containers. Check logs with: "
                         f"{self.cli.describe('logs')}. {_detail(result)}")
            outcome.error = result.error
            self._enter(outcome, FAILED)
            return outcome

        self._enter(outcome, PRUNE)
        logger.info("[4/4] Cleaning old images...")
        result = self.cli.prune_images()
        if not result.ok:
            logger.warning(f"Image prune failed: {_detail(result)}")

        self._enter(outcome, DONE)
        logger.info("=== Upgrade Complete ===")
        status = self.cli.ps()
        if status.ok and status.stdout.strip():
            logger.info(f"\n{status.stdout.rstrip()}")
        return outcome

    @staticmethod
    def _enter(outcome: UpgradeOutcome, state: str) -> None:
        outcome.state = state
        outcome.states_visited.append(state)
        logger.debug(f"Upgrade state -> {state}")


def _detail(result: CommandResult) -> str:
    text = (result.stderr or result.stdout or "").strip()
    return f"({result.error}) {text}".strip()


def _prompt_confirm(question: str) -> bool:
    """Ask on stdin; anything but y/yes declines."""
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")
