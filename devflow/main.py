"""CLI entry point for the DevFlow orchestrator."""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
import structlog

from devflow.config.settings import DevFlowSettings
from devflow.engine.orchestrator import DevFlowOrchestrator, load_workflow_definitions
from devflow.exceptions import ConfigurationError, DevFlowError, NotInitializedError
from devflow.models.domain import IssueContext, RepositoryRef, to_jsonable
from devflow.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

T = TypeVar("T")


def _echo_json(value: Any) -> None:
    click.echo(json.dumps(to_jsonable(value), indent=2, default=str))


def _parse_repo(value: str) -> RepositoryRef:
    try:
        return RepositoryRef.parse(value)
    except DevFlowError as e:
        raise click.BadParameter(e.message) from e


def _parse_params(values: tuple[str, ...]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got {item!r}", param_hint="--param")
        params[key] = raw
    return params


async def _with_orchestrator(
    settings: DevFlowSettings,
    action: Callable[[DevFlowOrchestrator], Awaitable[T]],
) -> T:
    orchestrator = DevFlowOrchestrator(settings)
    await orchestrator.initialize()
    try:
        return await action(orchestrator)
    finally:
        await orchestrator.shutdown()


def _run(command: str, coro: Awaitable[T]) -> T:
    """Run ``coro`` and map failures to exit codes."""
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except DevFlowError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{command}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{command}_unexpected", exc_info=True)
        sys.exit(1)


@click.group()
@click.option("--config", default=None, help="Path to configuration file (defaults to environment only)")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=False, help="Log as JSON lines instead of console output")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str, json_logs: bool) -> None:
    """devflow: issue, project, workflow and milestone automation."""
    configure_logging(log_level, json_output=json_logs)

    if config is not None and not Path(config).exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = DevFlowSettings.from_yaml(config) if config else DevFlowSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        log.error("config_error_unexpected", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.option("--repo", required=True, help="Repository as owner/name")
@click.option("--issue", type=int, required=True, help="Issue number to process")
@click.option("--organization", default=None, help="Organization profile (defaults to the repository owner)")
@click.option("--branch/--no-branch", default=None, help="Force or suppress branch and PR creation")
@click.option("--route/--no-route", default=None, help="Force or suppress routing to the project board")
@click.pass_context
def process_issue(
    ctx: click.Context,
    repo: str,
    issue: int,
    organization: str | None,
    branch: bool | None,
    route: bool | None,
) -> None:
    """Classify, label, route and branch for a single issue."""
    repository = _parse_repo(repo)
    context = IssueContext(
        repository=repository,
        organization=organization,
        create_branch=branch,
        route_to_project=route,
    )

    async def action(orchestrator: DevFlowOrchestrator) -> Any:
        provider = orchestrator.provider
        if provider is None:
            raise NotInitializedError("DevFlowOrchestrator", "Platform provider is not connected")
        fetched = await provider.get_issue(repository, issue)
        return await orchestrator.process_issue(fetched, context)

    _echo_json(_run("process_issue", _with_orchestrator(ctx.obj["settings"], action)))


@cli.command()
@click.option("--repo", "repos", multiple=True, required=True, help="Repository as owner/name (repeatable)")
@click.option("--organization", default=None, help="Organization profile (defaults to each repository owner)")
@click.pass_context
def create_project(ctx: click.Context, repos: tuple[str, ...], organization: str | None) -> None:
    """Provision project boards for one or more repositories."""
    repositories = [_parse_repo(r) for r in repos]

    async def action(orchestrator: DevFlowOrchestrator) -> Any:
        if len(repositories) == 1:
            return await orchestrator.create_project(repositories[0], organization)
        return await orchestrator.create_projects(repositories, organization)

    _echo_json(_run("create_project", _with_orchestrator(ctx.obj["settings"], action)))


@cli.command()
@click.option("--repo", required=True, help="Repository as owner/name")
@click.option("--milestone", type=int, default=None, help="Check one milestone instead of all open ones")
@click.pass_context
def check_milestones(ctx: click.Context, repo: str, milestone: int | None) -> None:
    """Check milestone completion and auto-close finished milestones."""
    repository = _parse_repo(repo)

    async def action(orchestrator: DevFlowOrchestrator) -> Any:
        if milestone is not None:
            return await orchestrator.check_milestone(repository, milestone)
        return await orchestrator.check_milestones(repository)

    _echo_json(_run("check_milestones", _with_orchestrator(ctx.obj["settings"], action)))


@cli.command()
@click.option("--repo", required=True, help="Repository as owner/name")
@click.option("--branch", required=True, help="Branch to assess")
@click.option("--target", default="main", show_default=True, help="Branch it will merge into")
@click.pass_context
def detect_conflicts(ctx: click.Context, repo: str, branch: str, target: str) -> None:
    """Report merge conflict risk for a branch."""
    repository = _parse_repo(repo)

    async def action(orchestrator: DevFlowOrchestrator) -> Any:
        return await orchestrator.detect_conflicts(repository, branch, target)

    report = _run("detect_conflicts", _with_orchestrator(ctx.obj["settings"], action))
    _echo_json(report)


@cli.command()
@click.argument("workflow_id")
@click.option("--definitions", "definitions_dir", default=None, help="Directory of workflow definition YAML files")
@click.option("--param", "params", multiple=True, help="KEY=VALUE placeholder for step configuration (repeatable)")
@click.option("--continue-on-error", is_flag=True, help="Keep going after a repository fails")
@click.option("--rollback", is_flag=True, help="Delete created branches and close created PRs if the run fails")
@click.pass_context
def run_workflow(
    ctx: click.Context,
    workflow_id: str,
    definitions_dir: str | None,
    params: tuple[str, ...],
    continue_on_error: bool,
    rollback: bool,
) -> None:
    """Run a cross-repository workflow."""
    parameters = _parse_params(params)
    parameters["continue_on_error"] = continue_on_error
    if rollback:
        parameters["rollback_on_failure"] = True

    async def action(orchestrator: DevFlowOrchestrator) -> Any:
        if definitions_dir:
            for definition in load_workflow_definitions(definitions_dir).values():
                orchestrator.register_workflow(definition)
        return await orchestrator.execute_workflow(workflow_id, parameters)

    result = _run("run_workflow", _with_orchestrator(ctx.obj["settings"], action))
    _echo_json(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.pass_context
def health_check(ctx: click.Context) -> None:
    """Report orchestrator and platform health."""

    async def action(orchestrator: DevFlowOrchestrator) -> dict[str, Any]:
        return await orchestrator.get_system_health()

    health = _run("health_check", _with_orchestrator(ctx.obj["settings"], action))
    _echo_json(health)
    if health.get("status") != "healthy":
        sys.exit(1)


if __name__ == "__main__":
    cli()
