#!/usr/bin/env python3
"""
S3 VPC Endpoint Provisioner - Main Entry Point

Command line front end. Each subcommand:
- Loads settings and the recorded state
- Builds its plan of steps
- Runs the sequencer (or the connectivity checks)
- Prints a summary, writes a JSON report and exits 0 / 1 / 2
"""

import sys
import json
import logging
from pathlib import Path
from typing import Optional

import click
import yaml

from . import __version__
from .config import load_settings
from .connectivity.checks import ConnectivityChecker
from .diagnostic_logger import configure_logging, log_system_info
from .errors import ConfirmationDenied, CorruptState, DependencyCycle, MissingDependency, ProvisionerError
from .metrics import METRICS, export_textfile
from .provider.aws import AwsProvider
from .reconciler.reporter import STATUS_MARKS, Reporter
from .reconciler.sequencer import Mode, OutcomeStatus, Sequencer, StepOutcome
from .state.store import StateStore
from .steps.compute import instance_addresses
from .steps.endpoint import ENDPOINT_ROLE, endpoint_details
from .steps.plans import build_plan, full_plan

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 2

CONFIRMATION_WORD = "DELETE"


class RunContext:
    """Settings and state shared by every subcommand of one invocation."""

    def __init__(self, settings, state: StateStore):
        self.settings = settings
        self.state = state
        self._provider: Optional[AwsProvider] = None

    @property
    def provider(self) -> AwsProvider:
        if self._provider is None:
            self._provider = AwsProvider(self.settings)
        return self._provider

    def report_path(self, name: str) -> Path:
        return Path(self.settings.report_dir) / name

    def stamp_metadata(self):
        self.state.set_metadata(
            project_id=self.settings.project_id,
            project_name=self.settings.project_name,
            region=self.settings.region,
        )


def echo_outcome(outcome: StepOutcome):
    status = outcome.status.value
    line = f"  [{STATUS_MARKS[status]}] {outcome.step_name}: {status}"
    click.echo(line, err=outcome.status == OutcomeStatus.FAILED)


def finish_run(run: RunContext, command: str):
    METRICS["last_run_timestamp"].labels(command=command).set_to_current_time()
    if run.settings.metrics_textfile:
        export_textfile(run.settings.metrics_textfile)


def provision(run: RunContext, command: str) -> int:
    """Run one provisioning plan and report on it."""
    settings = run.settings
    reporter = Reporter(command, Mode.PROVISION.value, settings.project_id, settings.region)
    run.stamp_metadata()

    click.echo(f"{command}: project {settings.project_id} in {settings.region}")
    try:
        steps = build_plan(command, run.provider)
        result = Sequencer(run.state, reporter, progress=echo_outcome).provision(steps)
        exit_code = result.exit_code
    except (MissingDependency, DependencyCycle) as e:
        # Raised before any provider call; nothing was changed
        logger.error(f"{command}: {e}")
        reporter.fail(e)
        exit_code = EXIT_FAILURE

    reporter.finish(exit_code)
    click.echo(reporter.render())
    path = reporter.write(str(run.report_path(f"{command}-report.json")))
    click.echo(f"Report written to {path}")
    finish_run(run, command)
    return exit_code


@click.group(help="Provision and test an S3 gateway VPC endpoint environment.")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML settings file")
@click.option("--project-id", help="Project id (defaults to the recorded one, or a new one)")
@click.option("--region", help="AWS region")
@click.option("--profile", help="AWS named profile")
@click.option("--endpoint-url", help="Provider endpoint override, e.g. a local emulator")
@click.option("--state-file", "state_path", type=click.Path(dir_okay=False), help="State document path")
@click.option("--report-dir", type=click.Path(file_okay=False), help="Directory for JSON reports")
@click.option("--log-level", help="DEBUG, INFO, WARNING or ERROR")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also log to this file")
@click.option("--metrics-textfile", type=click.Path(dir_okay=False), help="Write Prometheus metrics here after each run")
@click.version_option(__version__)
@click.pass_context
def cli(ctx, config_path, **options):
    try:
        settings = load_settings(config_path, overrides=options)
    except (ValueError, OSError, yaml.YAMLError) as e:
        click.echo(f"✗ Invalid configuration: {e}", err=True)
        ctx.exit(EXIT_FAILURE)

    configure_logging(settings.log_level, settings.log_file)

    state = StateStore(settings.state_path)
    try:
        state.load()
    except CorruptState as e:
        click.echo(f"✗ {e}", err=True)
        click.echo("  Repair or remove the file by hand; it is never rewritten automatically.", err=True)
        ctx.exit(EXIT_FAILURE)

    # Explicit --project-id/--region only win on a fresh state
    settings = settings.reconcile_with_state(state.metadata)
    log_system_info(settings)
    ctx.obj = RunContext(settings, state)


@cli.command("setup-network")
@click.pass_obj
def setup_network(run: RunContext):
    """VPC, gateway, subnets, route tables, security groups and the test bucket."""
    sys.exit(provision(run, "setup-network"))


@cli.command("create-endpoint")
@click.pass_obj
def create_endpoint(run: RunContext):
    """S3 gateway endpoint on both route tables."""
    exit_code = provision(run, "create-endpoint")

    if exit_code == EXIT_SUCCESS and run.state.has(ENDPOINT_ROLE):
        try:
            details = endpoint_details(run.provider, run.state.get(ENDPOINT_ROLE))
        except ProvisionerError as e:
            click.echo(f"! Endpoint details unavailable: {e}", err=True)
        else:
            path = run.report_path("s3-endpoint-details.json")
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(details, f, indent=2, default=str)
                f.write("\n")
            click.echo(f"Endpoint details written to {path}")

    sys.exit(exit_code)


@cli.command("deploy-test-instances")
@click.pass_obj
def deploy_test_instances(run: RunContext):
    """Key pair, IAM role and profile, bastion and private test instances."""
    exit_code = provision(run, "deploy-test-instances")

    if exit_code == EXIT_SUCCESS:
        for role in ("bastion-instance", "private-instance"):
            if not run.state.has(role):
                continue
            try:
                addresses = instance_addresses(run.provider, run.state.get(role))
            except ProvisionerError as e:
                logger.warning(f"Could not read addresses of {role}: {e}")
                continue
            shown = ", ".join(f"{k}={v}" for k, v in addresses.items())
            click.echo(f"  {role}: {run.state.get(role)} ({shown})")

    sys.exit(exit_code)


@cli.command("run-connectivity-tests")
@click.pass_obj
def run_connectivity_tests(run: RunContext):
    """Check the endpoint, its routes and S3 access through it."""
    report = ConnectivityChecker(run.provider, run.state).run_all()
    click.echo(report.render())

    path = run.report_path("s3-endpoint-test-report.json")
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report.to_document(), f, indent=2)
        f.write("\n")
    click.echo(f"Report written to {path}")

    finish_run(run, "run-connectivity-tests")
    sys.exit(report.exit_code)


def confirm_deletion(assume_yes: bool):
    if assume_yes:
        return
    try:
        answer = click.prompt(
            f"This deletes every recorded resource. Type {CONFIRMATION_WORD} to continue",
            default="",
            show_default=False,
        )
    except click.Abort:
        answer = ""
    if answer.strip() != CONFIRMATION_WORD:
        raise ConfirmationDenied("Cleanup not confirmed")


def discover(run: RunContext, steps) -> int:
    """Record tagged resources the state store lost track of."""
    adopted = 0
    for step in steps:
        if all(run.state.has(role) for role in step.produces):
            continue
        try:
            if not step.exists(run.state):
                continue
            found = step.adopt(run.state)
        except ProvisionerError as e:
            logger.warning(f"Discovery skipped {step.name}: {e}")
            continue
        for role, provider_id in found.items():
            run.state.put(role, provider_id)
            click.echo(f"  discovered {role}={provider_id}")
            adopted += 1
    if adopted:
        run.state.save()
    return adopted


@cli.command("cleanup")
@click.option("--yes", "assume_yes", is_flag=True, help="Skip the confirmation prompt")
@click.option("--discover", "discover_tagged", is_flag=True, help="Adopt tagged resources missing from state first")
@click.pass_obj
def cleanup(run: RunContext, assume_yes: bool, discover_tagged: bool):
    """Delete everything, newest first, attempting every step."""
    try:
        confirm_deletion(assume_yes)
    except ConfirmationDenied as e:
        click.echo(f"{e}; nothing was deleted.")
        sys.exit(EXIT_SUCCESS)

    settings = run.settings
    steps = full_plan(run.provider)
    if discover_tagged:
        run.stamp_metadata()
        discover(run, steps)

    if not len(run.state):
        click.echo("Nothing recorded; nothing to clean up.")

    reporter = Reporter("cleanup", Mode.TEARDOWN.value, settings.project_id, settings.region)
    result = Sequencer(run.state, reporter, progress=echo_outcome).teardown(steps)

    if result.success:
        run.state.destroy()
    else:
        click.echo(f"State kept at {settings.state_path} for the failed steps; rerun cleanup to retry.", err=True)

    reporter.finish(result.exit_code)
    click.echo(reporter.render())
    path = reporter.write(str(run.report_path("cleanup-report.json")))
    click.echo(f"Report written to {path}")
    finish_run(run, "cleanup")
    sys.exit(result.exit_code)


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, help="Print the state document as JSON")
@click.pass_obj
def status(run: RunContext, as_json: bool):
    """Show what the state store has recorded."""
    if as_json:
        click.echo(json.dumps(run.state.to_document(), indent=2))
        return

    settings = run.settings
    click.echo(f"Project: {settings.project_id} ({settings.project_name})")
    click.echo(f"Region: {settings.region}")
    click.echo(f"State file: {settings.state_path}")
    for key in ("created_timestamp", "updated_timestamp"):
        if key in run.state.metadata:
            click.echo(f"{key.replace('_', ' ').capitalize()}: {run.state.metadata[key]}")

    if not len(run.state):
        click.echo("No resources recorded.")
        return
    click.echo(f"Resources ({len(run.state)}):")
    for role in run.state.roles():
        record = run.state.record(role)
        click.echo(f"  {role:<24} {record.provider_id:<40} {record.created_at}")


def main():
    cli(prog_name="s3-endpoint")


if __name__ == "__main__":
    main()
