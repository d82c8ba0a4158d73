"""Tests for upgrade planning and the pull/stop/start/prune state machine."""

import pytest
from unittest.mock import MagicMock, patch

from compose_cli import COMMAND_FAILED, CommandResult
from compose_parser import ServiceImageBinding, parse_compose_services
from dcu import ComposeUpdateChecker
from tests.conftest import FULL_COMPOSE, WEB_DB_COMPOSE, make_docker, make_registry
from upgrade import (
    ABORTED, CANCELLED, CONFIRM, DONE, FAILED, PLAN, PRUNE, PULL, REPORT, SCAN, START, STOP,
    UpgradeOrchestrator, build_plan, _prompt_confirm,
)


def _ok(*args):
    return CommandResult(list(args), 0, "", "")


def _failed(*args):
    return CommandResult(list(args), 1, "", "error: pull access denied", COMMAND_FAILED)


@pytest.fixture
def cli():
    """ComposeCLI double where every phase succeeds."""
    mock = MagicMock()
    mock.describe.side_effect = lambda *args: " ".join(["docker", "compose"] + list(args))
    mock.pull.return_value = _ok("pull")
    mock.stop.return_value = _ok("stop")
    mock.up.return_value = _ok("up")
    mock.prune_images.return_value = _ok("prune")
    mock.ps.return_value = CommandResult(["ps"], 0, "NAME  STATUS\nweb   running\n", "")
    return mock


@pytest.fixture
def bindings():
    return [
        ServiceImageBinding("web", "nginx:latest"),
        ServiceImageBinding("cache", "redis:7-alpine"),
        ServiceImageBinding("db", "postgres:15.3.1"),
    ]


def _mutating_calls(cli):
    return cli.pull.call_count + cli.stop.call_count + cli.up.call_count + cli.prune_images.call_count


# ---------------------------------------------------------------------------
# build_plan
# ---------------------------------------------------------------------------

class TestBuildPlan:

    def test_selects_mutable_tags(self, bindings):
        plan = build_plan(bindings, {}, environ={})
        assert plan.selected_services == ["web", "cache"]
        assert plan.skipped_services == ["db"]

    def test_force_selects_all(self, bindings):
        plan = build_plan(bindings, {}, force=True, environ={})
        assert plan.selected_services == ["web", "cache", "db"]
        assert plan.skipped_services == []

    def test_variables_resolved_before_classifying(self):
        plan = build_plan(parse_compose_services(FULL_COMPOSE), {"API_TAG": "1.4.2"}, environ={})
        api = plan.entries[1]
        assert api.resolved_image == "ghcr.io/acme/api:1.4.2"
        assert api.upgradeable is False
        assert "api" not in plan.selected_services

    def test_digest_pinned_never_selected_without_force(self):
        plan = build_plan(parse_compose_services(FULL_COMPOSE), {}, environ={})
        assert plan.selected_services == ["web", "api", "cache"]

    def test_to_dict(self, bindings):
        data = build_plan(bindings, {}, dry_run=True, environ={}).to_dict()
        assert data["dry_run"] is True
        assert data["force"] is False
        assert data["selected_services"] == ["web", "cache"]
        assert data["services"][2] == {
            "name": "db", "image": "postgres:15.3.1", "upgradeable": False, "selected": False,
        }


# ---------------------------------------------------------------------------
# UpgradeOrchestrator
# ---------------------------------------------------------------------------

class TestOrchestrator:

    def test_full_run(self, cli, bindings):
        outcome = UpgradeOrchestrator(cli, headless=True).run(build_plan(bindings, {}, environ={}))

        assert outcome.state == DONE
        assert outcome.success
        assert outcome.states_visited == [SCAN, PLAN, PULL, STOP, START, PRUNE, DONE]
        cli.pull.assert_called_once_with(["web", "cache"])
        cli.stop.assert_called_once_with(["web", "cache"])
        cli.up.assert_called_once_with(["web", "cache"])
        cli.prune_images.assert_called_once_with()
        cli.ps.assert_called_once_with()

    def test_phases_run_in_order(self, cli, bindings):
        UpgradeOrchestrator(cli, headless=True).run(build_plan(bindings, {}, environ={}))
        phases = [c[0] for c in cli.method_calls if c[0] in ("pull", "stop", "up", "prune_images")]
        assert phases == ["pull", "stop", "up", "prune_images"]

    def test_dry_run_makes_no_changes(self, cli, bindings):
        real = build_plan(bindings, {}, environ={})
        dry = build_plan(bindings, {}, dry_run=True, environ={})
        outcome = UpgradeOrchestrator(cli, headless=True).run(dry)

        assert dry.selected_services == real.selected_services
        assert outcome.state == REPORT
        assert outcome.success
        assert _mutating_calls(cli) == 0
        assert outcome.commands == [
            "docker compose pull web cache",
            "docker compose stop web cache",
            "docker compose up -d --remove-orphans web cache",
            "docker image prune -f",
        ]

    def test_dry_run_does_not_ask(self, cli, bindings):
        confirm = MagicMock(return_value=True)
        UpgradeOrchestrator(cli, confirm=confirm).run(build_plan(bindings, {}, dry_run=True, environ={}))
        confirm.assert_not_called()

    def test_pull_failure_aborts(self, cli, bindings):
        cli.pull.return_value = _failed("pull")
        outcome = UpgradeOrchestrator(cli, headless=True).run(build_plan(bindings, {}, environ={}))

        assert outcome.state == ABORTED
        assert not outcome.success
        assert outcome.error == COMMAND_FAILED
        cli.stop.assert_not_called()
        cli.up.assert_not_called()
        cli.prune_images.assert_not_called()

    def test_stop_failure_is_not_fatal(self, cli, bindings):
        cli.stop.return_value = _failed("stop")
        outcome = UpgradeOrchestrator(cli, headless=True).run(build_plan(bindings, {}, environ={}))

        assert outcome.state == DONE
        cli.up.assert_called_once()
        cli.prune_images.assert_called_once()

    def test_start_failure(self, cli, bindings):
        cli.up.return_value = _failed("up")
        outcome = UpgradeOrchestrator(cli, headless=True).run(build_plan(bindings, {}, environ={}))

        assert outcome.state == FAILED
        assert not outcome.success
        assert outcome.states_visited[-2:] == [START, FAILED]
        cli.prune_images.assert_not_called()

    def test_prune_failure_is_not_fatal(self, cli, bindings):
        cli.prune_images.return_value = _failed("prune")
        outcome = UpgradeOrchestrator(cli, headless=True).run(build_plan(bindings, {}, environ={}))
        assert outcome.state == DONE

    def test_confirm_declined(self, cli, bindings):
        confirm = MagicMock(return_value=False)
        outcome = UpgradeOrchestrator(cli, confirm=confirm).run(build_plan(bindings, {}, environ={}))

        confirm.assert_called_once()
        assert outcome.state == CANCELLED
        assert outcome.states_visited[-2:] == [CONFIRM, CANCELLED]
        assert _mutating_calls(cli) == 0

    def test_confirm_accepted(self, cli, bindings):
        confirm = MagicMock(return_value=True)
        outcome = UpgradeOrchestrator(cli, confirm=confirm).run(build_plan(bindings, {}, environ={}))
        assert CONFIRM in outcome.states_visited
        assert outcome.state == DONE

    def test_headless_skips_confirm(self, cli, bindings):
        confirm = MagicMock(return_value=False)
        outcome = UpgradeOrchestrator(cli, headless=True, confirm=confirm).run(
            build_plan(bindings, {}, environ={}))
        confirm.assert_not_called()
        assert CONFIRM not in outcome.states_visited

    def test_nothing_selected(self, cli):
        plan = build_plan([ServiceImageBinding("db", "postgres:15.3.1")], {}, environ={})
        outcome = UpgradeOrchestrator(cli, headless=True).run(plan)

        assert outcome.state == DONE
        assert outcome.states_visited == [SCAN, PLAN, DONE]
        assert _mutating_calls(cli) == 0

    def test_force_upgrades_pinned(self, cli, bindings):
        plan = build_plan(bindings, {}, force=True, environ={})
        UpgradeOrchestrator(cli, headless=True).run(plan)
        cli.pull.assert_called_once_with(["web", "cache", "db"])

    def test_outcome_to_dict(self, cli, bindings):
        cli.pull.return_value = _failed("pull")
        data = UpgradeOrchestrator(cli, headless=True).run(build_plan(bindings, {}, environ={})).to_dict()
        assert data["state"] == ABORTED
        assert data["success"] is False
        assert data["error"] == COMMAND_FAILED
        assert data["plan"]["selected_services"] == ["web", "cache"]


class TestPromptConfirm:

    @pytest.mark.parametrize("answer,expected", [
        ("y", True), ("YES", True), (" yes ", True), ("n", False), ("", False), ("maybe", False),
    ])
    def test_answers(self, answer, expected):
        with patch("builtins.input", return_value=answer):
            assert _prompt_confirm("Proceed?") is expected

    def test_eof_declines(self):
        with patch("builtins.input", side_effect=EOFError):
            assert _prompt_confirm("Proceed?") is False


# ---------------------------------------------------------------------------
# ComposeUpdateChecker.upgrade
# ---------------------------------------------------------------------------

class TestCheckerUpgrade:

    def test_assume_yes(self, make_checker, project_dir, cli):
        outcome = make_checker(cli=cli).upgrade(str(project_dir), assume_yes=True)
        assert outcome.state == DONE
        cli.pull.assert_called_once_with(["web"])

    def test_headless_from_environment(self, make_checker, project_dir, cli, monkeypatch):
        monkeypatch.setenv("DCU_HEADLESS", "1")
        confirm = MagicMock(return_value=False)
        outcome = make_checker(cli=cli).upgrade(str(project_dir), confirm=confirm)
        confirm.assert_not_called()
        assert outcome.state == DONE

    def test_dry_run(self, make_checker, project_dir, cli):
        outcome = make_checker(cli=cli).upgrade(str(project_dir), dry_run=True)
        assert outcome.state == REPORT
        assert _mutating_calls(cli) == 0

    def test_plan_upgrade(self, make_checker, project_dir):
        plan = make_checker().plan_upgrade(str(project_dir), force=True)
        assert plan.selected_services == ["web", "db"]

    def test_cli_built_for_project(self, project_dir, cli):
        factory = MagicMock(return_value=cli)
        checker = ComposeUpdateChecker(registry=make_registry(), docker=make_docker(), cli_factory=factory)
        checker.upgrade(str(project_dir), assume_yes=True)

        project, compose_file = factory.call_args[0]
        assert project == project_dir.resolve()
        assert compose_file.name == "docker-compose.yml"


def test_web_db_manifest_plan():
    plan = build_plan(parse_compose_services(WEB_DB_COMPOSE), {}, environ={})
    assert plan.selected_services == ["web"]
