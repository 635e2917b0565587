"""deploykit Command Line Interface.

Provides CLI commands for deploying the service, rolling it back and
checking its health. Every command exits 0 on success and 1 on failure.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from deploykit.config.settings import get_settings
from deploykit.errors import DeployError
from deploykit.models import DeploymentTarget
from deploykit.observability.logging import (
    add_context,
    clear_context,
    configure_logging,
    get_logger,
)
from deploykit.observability.metrics import MetricsCollector
from deploykit.version import __version__

if TYPE_CHECKING:
    from argparse import Namespace

    from deploykit.config.settings import Settings
    from deploykit.orchestrator import Orchestrator


log = get_logger(__name__)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        msg = f"must be a positive integer, got {value}"
        raise argparse.ArgumentTypeError(msg)
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        msg = f"must be a positive number, got {value}"
        raise argparse.ArgumentTypeError(msg)
    return number


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="deploykit",
        description="deploykit - deploy, roll back and health-check the service on Kubernetes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  deploykit deploy staging v2              Deploy image tag v2 to staging
  deploykit rollback production            Roll production back one revision
  deploykit rollback production 3          Roll production back to revision 3
  deploykit health-check production        Run smoke tests and cluster checks
        """,
    )

    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v for debug logs)",
    )
    parser.add_argument(
        "--manifests",
        type=Path,
        default=None,
        help="Directory holding the service manifests",
    )
    parser.add_argument(
        "--output",
        choices=["text", "json"],
        default="text",
        help="Report format on standard output",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Deploy command
    deploy_parser = subparsers.add_parser("deploy", help="Deploy an image tag to an environment")
    deploy_parser.add_argument("environment", help="Target environment (e.g. staging)")
    deploy_parser.add_argument("image_tag", nargs="?", default=None, help="Image tag to deploy")
    deploy_parser.add_argument(
        "--skip-health-check",
        action="store_true",
        help="Do not run the health check after the rollout converged",
    )
    deploy_parser.add_argument(
        "--backup-dir",
        type=Path,
        default=None,
        help="Write a YAML backup of the live Deployment before deploying",
    )
    deploy_parser.add_argument(
        "--no-server-dry-run",
        action="store_true",
        help="Skip the server-side dry-run validation",
    )

    # Rollback command
    rollback_parser = subparsers.add_parser("rollback", help="Roll back to a previous revision")
    rollback_parser.add_argument("environment", help="Target environment")
    rollback_parser.add_argument(
        "revision",
        nargs="?",
        type=int,
        default=0,
        help="Revision to roll back to (0 = previous revision)",
    )

    # Health check command
    health_parser = subparsers.add_parser("health-check", help="Check service health")
    health_parser.add_argument("environment", help="Target environment")
    health_parser.add_argument("endpoint", nargs="?", default=None, help="Service base URL")
    health_parser.add_argument("--expected-status", type=int, default=None)
    health_parser.add_argument(
        "--retries", type=_positive_int, default=None, help="Attempts per endpoint"
    )
    health_parser.add_argument(
        "--timeout", type=_positive_float, default=None, help="Seconds per attempt"
    )

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Validate manifests only")
    validate_parser.add_argument("environment", help="Target environment")
    validate_parser.add_argument(
        "--server",
        action="store_true",
        help="Also run a server-side dry-run against the cluster",
    )

    # Status command
    status_parser = subparsers.add_parser("status", help="Show the deployed workload")
    status_parser.add_argument("environment", help="Target environment")

    # History command
    history_parser = subparsers.add_parser("history", help="List retained revisions")
    history_parser.add_argument("environment", help="Target environment")

    return parser


def _emit(args: Namespace, payload: dict[str, Any], text: str) -> None:
    if args.output == "json":
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


def _build_orchestrator(settings: Settings, metrics: MetricsCollector | None) -> Orchestrator:
    from deploykit.orchestrator import Orchestrator

    return Orchestrator(settings, metrics=metrics)


def run_deploy(args: Namespace, settings: Settings, metrics: MetricsCollector | None) -> int:
    """Deploy an image tag to an environment."""
    overrides: dict[str, Any] = {}
    if args.skip_health_check:
        overrides["verify_after_deploy"] = False
    if args.backup_dir:
        overrides["backup_dir"] = args.backup_dir
    if args.no_server_dry_run:
        overrides["rollout"] = settings.rollout.model_copy(update={"server_dry_run": False})
    if overrides:
        settings = settings.model_copy(update=overrides)

    target = DeploymentTarget.from_settings(settings, args.environment, args.image_tag)
    orchestrator = _build_orchestrator(settings, metrics)
    outcome = asyncio.run(orchestrator.deploy(target))

    lines = [
        "Deployment Summary:",
        "================================",
        f"Environment: {target.environment}",
        f"Namespace: {target.namespace}",
        f"Image: {target.image}",
        f"Deployment: {settings.workload.deployment_name}",
        f"Result: {outcome.phase.value}",
    ]
    if outcome.rollback_revision is not None:
        lines.append(f"Rolled back to revision: {outcome.rollback_revision}")
    if outcome.health is not None:
        lines.extend(["", outcome.health.render_text()])
    _emit(args, outcome.to_dict(), "\n".join(lines))

    outcome.raise_for_error()
    return 0


def run_rollback(args: Namespace, settings: Settings, metrics: MetricsCollector | None) -> int:
    """Roll an environment back."""
    target = DeploymentTarget.from_settings(settings, args.environment)
    orchestrator = _build_orchestrator(settings, metrics)
    result = asyncio.run(orchestrator.rollback(target, args.revision))
    _emit(
        args,
        {
            "environment": target.environment,
            "namespace": target.namespace,
            "revision": result.revision,
            "phase": result.rollout.phase.value,
        },
        f"Rolled back {settings.workload.deployment_name} in {target.namespace} "
        f"to revision {result.revision}",
    )
    return 0


def run_health_check(
    args: Namespace, settings: Settings, metrics: MetricsCollector | None
) -> int:
    """Check the health of an environment."""
    target = DeploymentTarget.from_settings(settings, args.environment)
    orchestrator = _build_orchestrator(settings, metrics)
    report = asyncio.run(
        orchestrator.health_check(
            target,
            args.endpoint,
            expected_status=args.expected_status,
            retries=args.retries,
            timeout_seconds=args.timeout,
        )
    )
    if metrics:
        outcome = "passed" if report.passed else "failed"
        metrics.record_invocation("health-check", target.environment, outcome)
    _emit(args, report.to_dict(), report.render_text())
    return 0 if report.passed else 1


def run_validate(args: Namespace, settings: Settings, metrics: MetricsCollector | None) -> int:
    """Validate the manifest set."""
    target = DeploymentTarget.from_settings(settings, args.environment)
    rendered = _build_orchestrator(settings, metrics).validate(target, server=args.server)
    _emit(
        args,
        {"valid": True, "manifests": [str(m) for m in rendered]},
        "All manifests are valid:\n" + "\n".join(f"  {m} ({m.source})" for m in rendered),
    )
    return 0


def run_status(args: Namespace, settings: Settings, metrics: MetricsCollector | None) -> int:
    """Show the deployed workload."""
    target = DeploymentTarget.from_settings(settings, args.environment)
    summary = _build_orchestrator(settings, metrics).status(target)
    status = summary.status
    lines = [
        f"Deployment: {summary.name} ({summary.namespace})",
        f"Revision: {status.revision}",
        f"Images: {', '.join(summary.images)}",
        f"Replicas: {status.ready}/{status.desired} ready, {status.updated} updated",
        f"Service endpoints: {summary.endpoint_count}",
        f"Ingress hosts: {', '.join(summary.ingress_hosts) or '-'}",
        "",
        "Pods:",
    ]
    lines.extend(
        f"  {p.name}  {p.phase}  {'ready' if p.ready else 'not ready'}  {p.restarts} restarts"
        for p in summary.pods
    )
    payload = {
        "name": summary.name,
        "namespace": summary.namespace,
        "status": status.to_dict(),
        "images": summary.images,
        "endpoint_count": summary.endpoint_count,
        "ingress_hosts": summary.ingress_hosts,
        "pods": [p.__dict__ for p in summary.pods],
    }
    _emit(args, payload, "\n".join(lines))
    return 0


def run_history(args: Namespace, settings: Settings, metrics: MetricsCollector | None) -> int:
    """List retained revisions."""
    target = DeploymentTarget.from_settings(settings, args.environment)
    revisions = _build_orchestrator(settings, metrics).history(target)
    lines = ["REVISION  IMAGE"]
    lines.extend(f"{r.number:<9} {', '.join(r.images)}" for r in revisions)
    payload = {
        "revisions": [
            {
                "number": r.number,
                "images": list(r.images),
                "created_at": r.created_at,
                "replica_set": r.replica_set,
            }
            for r in revisions
        ]
    }
    _emit(args, payload, "\n".join(lines))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    if args.manifests:
        settings = settings.model_copy(update={"manifest_dir": args.manifests})

    observability = settings.observability
    level = "DEBUG" if args.verbose else observability.log_level
    configure_logging(level=level, format_type=observability.log_format)

    metrics = None
    if observability.metrics_enabled:
        metrics = MetricsCollector()
        metrics.set_build_info(__version__)

    command_handlers = {
        "deploy": run_deploy,
        "rollback": run_rollback,
        "health-check": run_health_check,
        "validate": run_validate,
        "status": run_status,
        "history": run_history,
    }

    handler = command_handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    add_context(command=args.command)
    try:
        return handler(args, settings, metrics)
    except DeployError as e:
        log.error("command_failed", code=e.code, error=e.message)
        print(f"ERROR: [{e.code}] {e.message}", file=sys.stderr)
        return 1
    finally:
        if metrics and observability.pushgateway_url:
            metrics.push(observability.pushgateway_url)
        clear_context()


if __name__ == "__main__":
    sys.exit(main())
