"""Command-line interface for the safeguard layer.

Usage:
    agent-safeguards rollback smart "tests broke after merge"
    agent-safeguards rollback git <commit> "reason"
    agent-safeguards compliance-monitor services
    agent-safeguards boundary-monitor --agent services
    agent-safeguards experiment setup trial-1 services
    agent-safeguards safe-integrate services safe
    agent-safeguards orchestrator
    agent-safeguards dashboard --health
    agent-safeguards agent run services

Global options (``--workspace``, ``--shared-dir``, ``--pipeline``) override the
``SAFEGUARDS_*`` environment variables.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .agent_runner import AgentRunner, CommandAgentInvoker
from .config import Settings
from .context import SafeguardContext
from .exceptions import ConfigurationError, SafeguardError
from .integration import MODES, SafeIntegrator
from .dashboard import format_dashboard, format_health
from .orchestrator import OrchestratorLoop
from .tasks import CancellationToken, install_signal_handlers
from .verification import CommandTestRunner, VerificationResult


__all__ = [
    "main",
    "create_parser",
    "configure_logging",
    "format_error",
    "cmd_rollback",
    "cmd_compliance_monitor",
    "cmd_boundary_monitor",
    "cmd_experiment",
    "cmd_safe_integrate",
    "cmd_orchestrator",
    "cmd_dashboard",
    "cmd_agent",
]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

ROLLBACK_ACTIONS = ["git", "snapshot", "files", "emergency", "smart", "verify", "list"]
EXPERIMENT_ACTIONS = ["setup", "start", "stop", "analyze", "cleanup"]
AGENT_ACTIONS = ["run", "step", "reset", "status"]


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser with all subcommands.
    """
    parser = argparse.ArgumentParser(
        prog="agent-safeguards",
        description="Agent Safeguards CLI - coordinate, monitor and recover a multi-agent pipeline",
    )
    parser.add_argument("--workspace", help="Repository the agents work in (default: cwd)")
    parser.add_argument("--shared-dir", help="Shared state directory (default: .safeguards)")
    parser.add_argument("--pipeline", help="Pipeline definition file (default: agents.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Rollback command
    rollback_parser = subparsers.add_parser(
        "rollback",
        help="Roll the workspace back to a known-good state",
    )
    rollback_parser.add_argument("action", choices=ROLLBACK_ACTIONS)
    rollback_parser.add_argument(
        "target",
        nargs="?",
        help="Commit (git), snapshot name (snapshot), comma-separated files (files), "
             "agent whose scope applies (smart)",
    )
    rollback_parser.add_argument("reason", nargs="?", help="Why the rollback is needed")
    rollback_parser.add_argument(
        "--ref",
        default="HEAD~1",
        help="Revision files are restored from (files only, default: HEAD~1)",
    )
    rollback_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the strategy smart would choose without running it",
    )
    rollback_parser.add_argument("--limit", type=int, default=10, help="Entries shown by list")
    rollback_parser.set_defaults(func=cmd_rollback)

    # Compliance monitor command
    compliance_parser = subparsers.add_parser(
        "compliance-monitor",
        help="Score an agent's changes against the compliance rules",
    )
    compliance_parser.add_argument("agent", help="Agent to monitor")
    compliance_parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    compliance_parser.add_argument("--cycles", type=int, help="Stop after this many cycles")
    compliance_parser.add_argument("--interval", type=float, help="Seconds between cycles")
    compliance_parser.add_argument("--report", action="store_true", help="Print the current report only")
    compliance_parser.set_defaults(func=cmd_compliance_monitor)

    # Boundary monitor command
    boundary_parser = subparsers.add_parser(
        "boundary-monitor",
        help="Watch the workspace for destructive changes",
    )
    boundary_parser.add_argument("--agent", help="Agent whose scope and process apply")
    boundary_parser.add_argument("--baseline", action="store_true", help="Capture the baseline and exit")
    boundary_parser.add_argument("--once", action="store_true", help="Run a single check and exit")
    boundary_parser.add_argument("--cycles", type=int, help="Stop after this many checks")
    boundary_parser.add_argument("--interval", type=float, help="Seconds between checks")
    boundary_parser.add_argument("--resume", metavar="AGENT", help="Resume a suspended agent and exit")
    boundary_parser.set_defaults(func=cmd_boundary_monitor)

    # Experiment command
    experiment_parser = subparsers.add_parser(
        "experiment",
        help="Run the pipeline in a disposable sandbox",
    )
    experiment_parser.add_argument("action", choices=EXPERIMENT_ACTIONS)
    experiment_parser.add_argument("name", help="Experiment name")
    experiment_parser.add_argument("target", nargs="?", help="Agent or component under trial (setup)")
    experiment_parser.add_argument("--cycles", type=int, help="Stop watching after this many cycles")
    experiment_parser.add_argument("--interval", type=float, help="Seconds between watcher cycles")
    experiment_parser.set_defaults(func=cmd_experiment)

    # Safe-integrate command
    integrate_parser = subparsers.add_parser(
        "safe-integrate",
        help="Guarded integration workflows for one target",
    )
    integrate_parser.add_argument("target", help="Agent being integrated")
    integrate_parser.add_argument("mode", choices=list(MODES))
    integrate_parser.set_defaults(func=cmd_safe_integrate)

    # Orchestrator command
    orchestrator_parser = subparsers.add_parser(
        "orchestrator",
        help="Run the phase scheduler loop",
    )
    orchestrator_parser.add_argument("--cycles", type=int, help="Stop after this many cycles")
    orchestrator_parser.add_argument("--interval", type=float, help="Seconds between cycles")
    orchestrator_parser.set_defaults(func=cmd_orchestrator)

    # Dashboard command
    dashboard_parser = subparsers.add_parser(
        "dashboard",
        help="Show pipeline progress",
    )
    dashboard_parser.add_argument("--health", action="store_true", help="Show system health only")
    dashboard_parser.set_defaults(func=cmd_dashboard)

    # Agent command
    agent_parser = subparsers.add_parser(
        "agent",
        help="Run one agent under its restart budget",
    )
    agent_parser.add_argument("action", choices=AGENT_ACTIONS)
    agent_parser.add_argument("name", help="Agent name from the pipeline definition")
    agent_parser.add_argument("--cycles", type=int, help="Stop after this many attempts")
    agent_parser.add_argument("--interval", type=float, help="Seconds between attempts")
    agent_parser.add_argument("--no-wait", action="store_true", help="Do not wait for dependencies")
    agent_parser.set_defaults(func=cmd_agent)

    return parser


def configure_logging(shared: Path, verbose: bool = False) -> None:
    """Log to stderr and to ``<shared>/logs/safeguards.log``."""
    log_dir = shared / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_dir / "safeguards.log"),
            logging.StreamHandler(),
        ],
    )


def build_context(args: argparse.Namespace) -> SafeguardContext:
    settings = Settings.from_env(
        workspace=getattr(args, "workspace", None),
        shared_dir=getattr(args, "shared_dir", None),
        pipeline_file=getattr(args, "pipeline", None),
    )
    return SafeguardContext(settings)


def format_error(error: Exception) -> str:
    """Format an exception as a user-friendly error message.

    Args:
        error: Exception to format.

    Returns:
        Human-readable error message without stack trace.
    """
    if isinstance(error, argparse.ArgumentTypeError):
        return f"Error: {error}"
    elif isinstance(error, SafeguardError):
        return f"Error: {error.message}"
    else:
        return f"Unexpected error: {error}"


def _emit(args: argparse.Namespace, data: Any, lines: Optional[List[str]] = None) -> None:
    """Print ``data`` as JSON with ``--json``, otherwise the text lines."""
    if getattr(args, "json", False) or lines is None:
        print(json.dumps(data, indent=2, default=str))
    else:
        print("\n".join(lines))


def _interval(args: argparse.Namespace, default: float) -> float:
    return args.interval if getattr(args, "interval", None) else default


def _signal_token() -> CancellationToken:
    token = CancellationToken()
    install_signal_handlers(token)
    return token


def _format_verification(result: VerificationResult) -> List[str]:
    lines = [f"Verification: {result.status.upper()}"]
    for check in result.checks:
        if check.skipped:
            lines.append(f"  - {check.name}: skipped (no command configured)")
        else:
            mark = "✓" if check.passed else "✗"
            lines.append(f"  {mark} {check.name}: {check.command} (exit {check.returncode})")
            for issue in check.issues:
                lines.append(f"      {issue}")
    return lines


def _format_record(record: Dict[str, Any]) -> List[str]:
    return [
        f"Rollback {record['id']} ({record['level']})",
        f"  Target: {record['target']}",
        f"  Reason: {record['reason'] or '(none)'}",
        f"  Backup: {record['backup_ref']}",
        f"  Outcome: {record['outcome']}",
    ]


# ==============================================================================
# Commands
# ==============================================================================

def cmd_rollback(args: argparse.Namespace) -> int:
    """Execute the rollback command.

    Args:
        args: Parsed command-line arguments containing:
            - action: git, snapshot, files, emergency, smart, verify or list
            - target: Action-specific target
            - reason: Free-text reason stored in the rollback record

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        context = build_context(args)
        engine = context.rollback_engine()
        reason = args.reason or ""

        if args.action == "verify":
            result = engine.verify()
            _emit(args, result.to_dict(), _format_verification(result))
            return 0 if result.passed else 1

        if args.action == "list":
            listing = engine.list(args.limit)
            lines = ["Recent commits:"]
            lines.extend(f"  {line}" for line in listing["recent_commits"] or ["(none)"])
            lines.append("Snapshots:")
            lines.extend(f"  {name}" for name in listing["snapshots"] or ["(none)"])
            lines.append("Backups:")
            lines.extend(f"  {name}" for name in listing["backups"] or ["(none)"])
            lines.append("Recovery tags:")
            lines.extend(f"  {tag}" for tag in listing["recovery_tags"] or ["(none)"])
            lines.append("Rollback records:")
            for record in listing["records"]:
                lines.append(
                    f"  {record['timestamp']} {record['level']:<9} {record['outcome']:<9} "
                    f"{record['target']} {record['reason']}"
                )
            if not listing["records"]:
                lines.append("  (none)")
            _emit(args, listing, lines)
            return 0

        if args.action == "git":
            if not args.target:
                raise ConfigurationError("rollback git needs a target commit")
            record = engine.rollback_git(args.target, reason)
        elif args.action == "snapshot":
            record = engine.rollback_snapshot(args.target, reason)
        elif args.action == "files":
            if not args.target:
                raise ConfigurationError("rollback files needs a comma-separated file list")
            files = [f.strip() for f in args.target.split(",") if f.strip()]
            record = engine.rollback_files(files, reason, ref=args.ref)
        elif args.action == "emergency":
            # A lone positional is the reason; emergency has no target
            record = engine.rollback_emergency(args.reason or args.target or "")
        else:
            agent = context.agent(args.target) if args.target else None
            scope = agent.scope if agent else ()
            if agent is None and args.target and not args.reason:
                reason = args.target
            if args.dry_run:
                plan = engine.select_strategy(scope)
                _emit(args, plan.to_dict(), [
                    f"Smart rollback would use: {plan.level.value}",
                    f"  Target: {plan.target}",
                    f"  Rationale: {plan.rationale}",
                    f"  Metrics: {json.dumps(plan.metrics, default=str)}",
                ])
                return 0
            plan, record = engine.smart(reason, scope)
            print(f"Smart rollback chose {plan.level.value}: {plan.rationale}")

        _emit(args, record.to_dict(), _format_record(record.to_dict()))
        return 0
    except Exception as e:
        print(format_error(e), file=sys.stderr)
        return 1


def cmd_compliance_monitor(args: argparse.Namespace) -> int:
    """Execute the compliance-monitor command.

    With ``--once`` the exit code is 1 when the cycle found violations.
    """
    try:
        context = build_context(args)
        monitor = context.compliance_monitor(args.agent)

        if args.report:
            report = monitor.report()
        elif args.once:
            cycle = monitor.run_cycle()
            report = monitor.report()
            if cycle is not None and cycle.violations:
                _emit(args, report, _format_compliance(report))
                return 1
        else:
            monitor.run(
                interval=_interval(args, context.settings.compliance_interval),
                token=_signal_token(),
                max_cycles=args.cycles,
            )
            report = monitor.report()

        _emit(args, report, _format_compliance(report))
        return 0
    except Exception as e:
        print(format_error(e), file=sys.stderr)
        return 1


def _format_compliance(report: Dict[str, Any]) -> List[str]:
    return [
        f"Compliance report for {report['agent']}",
        "=" * 50,
        f"Score:          {report['score']} ({report['band']})",
        f"Cycles:         {report['cycles']}",
        f"Violations:     {report['violations']}",
        f"Warnings:       {report['warnings']}",
        f"Recommendation: {report['recommendation']}",
    ]


def cmd_boundary_monitor(args: argparse.Namespace) -> int:
    """Execute the boundary-monitor command.

    With ``--once`` the exit code is 1 when the check found violations.
    """
    try:
        context = build_context(args)
        monitor = context.boundary_monitor(args.agent)

        if args.resume:
            record = monitor.resume(args.resume)
            _emit(args, record, [f"✓ Resumed {args.resume} (backup {record['backup_ref']})"])
            return 0

        if args.baseline:
            snapshot = monitor.capture_baseline()
            _emit(args, snapshot.to_dict(), [
                f"✓ Baseline captured: {snapshot.name} ({len(snapshot.tracked_files)} files)"
            ])
            return 0

        if args.once:
            monitor.ensure_baseline()
            report = monitor.check()
            lines = [f"Boundary check: {len(report.violations)} violation(s)"]
            lines.extend(f"  - [{v.severity.value}] {v.kind}: {', '.join(v.files[:5])}" for v in report.violations)
            _emit(args, report.to_dict(), lines)
            return 1 if report.violations else 0

        cycles = monitor.run(
            interval=_interval(args, context.settings.boundary_interval),
            token=_signal_token(),
            max_cycles=args.cycles,
        )
        violations = monitor.violations()
        _emit(args, {"cycles": cycles, "violations": violations}, [
            f"Boundary monitor stopped after {cycles} cycle(s)",
            f"Violations recorded: {len(violations)}",
        ])
        return 0
    except Exception as e:
        print(format_error(e), file=sys.stderr)
        return 1


def cmd_experiment(args: argparse.Namespace) -> int:
    """Execute the experiment command."""
    try:
        context = build_context(args)
        manager = context.experiment_manager()

        if args.action == "setup":
            if not args.target:
                raise ConfigurationError("experiment setup needs a target")
            experiment = manager.setup(args.name, args.target)
            _emit(args, experiment.to_dict(), [
                f"✓ Experiment {experiment.name} set up",
                f"  Branch: {experiment.branch} (from {experiment.base_branch} "
                f"at {experiment.base_commit[:12]})",
                f"  Workspace: {manager.workspace_path(experiment.name)}",
            ])
            return 0

        if args.action == "analyze":
            analysis = manager.analyze(args.name)
            lines = [
                f"Experiment {args.name}: {analysis['verdict'].upper()}",
                f"  {analysis['description']}",
                f"  Violations: {len(analysis['violations'])}",
                f"  Warnings: {len(analysis['warnings'])}",
            ]
            lines.extend(f"    {line}" for line in analysis["violations"])
            _emit(args, analysis, lines)
            return 1 if analysis["verdict"] == "failed" else 0

        if args.action == "start":
            experiment = manager.start(
                args.name,
                interval=_interval(args, context.settings.experiment_interval),
                token=_signal_token(),
                max_cycles=args.cycles,
            )
        elif args.action == "stop":
            experiment = manager.stop(args.name)
        else:
            experiment = manager.cleanup(args.name)
        _emit(args, experiment.to_dict(), [f"Experiment {experiment.name}: {experiment.status.value}"])
        return 0
    except Exception as e:
        print(format_error(e), file=sys.stderr)
        return 1


def cmd_safe_integrate(args: argparse.Namespace) -> int:
    """Execute the safe-integrate command."""
    try:
        integrator = SafeIntegrator(build_context(args))

        if args.mode == "safe":
            result = integrator.safe(args.target)
            lines = [f"Safe integration of {args.target}: {'PASSED' if result['passed'] else 'FAILED'}"]
            lines.extend(f"  ✗ {failure}" for failure in result["failures"])
            if result["recommendation"]:
                plan = result["recommendation"]
                lines.append(f"  Recommended: agent-safeguards rollback {plan['level']} ({plan['rationale']})")
            _emit(args, result, lines)
            return 0 if result["passed"] else 1

        if args.mode == "experiment":
            experiment = integrator.experiment(args.target)
            _emit(args, experiment.to_dict(), [
                f"✓ Experiment {experiment.name} set up on {experiment.branch}",
                f"  Next: agent-safeguards experiment start {experiment.name}",
            ])
            return 0

        if args.mode == "emergency-rollback":
            record = integrator.emergency_rollback(args.target)
            _emit(args, record.to_dict(), _format_record(record.to_dict()))
            return 0

        status = integrator.status(args.target)
        lines = [format_dashboard(status["dashboard"]), ""]
        lines.extend(format_health(status["health"]))
        compliance = status["compliance"]
        lines.append("")
        lines.append(f"Compliance for {args.target}: {compliance['score']} ({compliance['band']})")
        lines.append(f"Boundary violations for {args.target}: {len(status['boundary_violations'])}")
        lines.append("Recent rollbacks:")
        for record in status["rollbacks"]:
            lines.append(f"  {record['timestamp']} {record['level']} {record['outcome']} {record['reason']}")
        if not status["rollbacks"]:
            lines.append("  (none)")
        _emit(args, status, lines)
        return 0
    except Exception as e:
        print(format_error(e), file=sys.stderr)
        return 1


def cmd_orchestrator(args: argparse.Namespace) -> int:
    """Execute the orchestrator command."""
    try:
        context = build_context(args)
        loop = OrchestratorLoop(
            context.scheduler,
            context.store,
            interval=_interval(args, context.settings.poll_interval),
            handle_signals=True,
        )
        cycles = loop.run(max_cycles=args.cycles)
        complete = context.scheduler.pipeline_complete()
        _emit(args, {"cycles": cycles, "pipeline_complete": complete}, [
            f"Orchestrator ran {cycles} cycle(s); pipeline {'complete' if complete else 'incomplete'}"
        ])
        return 0
    except Exception as e:
        print(format_error(e), file=sys.stderr)
        return 1


def cmd_dashboard(args: argparse.Namespace) -> int:
    """Execute the dashboard command."""
    try:
        monitor = build_context(args).pipeline_monitor()
        if args.health:
            health = monitor.get_system_health()
            _emit(args, health, format_health(health))
            return 0 if health["health_status"] != "UNHEALTHY" else 1
        dashboard = monitor.get_dashboard()
        _emit(args, dashboard, [format_dashboard(dashboard)])
        return 0
    except Exception as e:
        print(format_error(e), file=sys.stderr)
        return 1


def cmd_agent(args: argparse.Namespace) -> int:
    """Execute the agent command.

    ``run`` waits for dependencies, then steps until success or cancellation.
    An agent that ends exhausted exits with 1.
    """
    try:
        context = build_context(args)
        settings = context.settings
        agent = context.agent(args.name)
        if agent is None:
            raise ConfigurationError(f"Agent {args.name} is not defined in the pipeline")

        test_command = agent.test_command or settings.test_command
        if not test_command:
            raise ConfigurationError(f"Agent {agent.name} has no test command")
        invoker = None
        if settings.agent_command:
            invoker = CommandAgentInvoker(settings.agent_command, context.workspace, settings.agent_timeout)
        runner = AgentRunner(
            agent,
            context.coordinator,
            context.scheduler,
            CommandTestRunner(test_command, context.workspace, settings.test_timeout),
            invoker=invoker,
            target_pass_rate=settings.target_pass_rate,
        )

        if args.action == "reset":
            runner.reset()
            print(f"✓ Restart counter cleared for {agent.name}")
            return 0
        if args.action == "status":
            status = context.pipeline_monitor().get_agent_status(agent.name)
            _emit(args, status or {"name": agent.name, "state": "not started"}, None)
            return 0
        if args.action == "step":
            state = runner.step()
        else:
            token = _signal_token()
            if not args.no_wait and not context.scheduler.wait_until_ready(
                agent.name, timeout=settings.dependency_wait_timeout, token=token,
            ):
                missing = ", ".join(context.scheduler.unmet_dependencies(agent.name))
                print(f"Error: dependencies not ready: {missing}", file=sys.stderr)
                return 1
            state = runner.run(
                interval=_interval(args, settings.poll_interval),
                token=token,
                max_cycles=args.cycles,
            )

        _emit(args, {"agent": agent.name, "state": state.value, "attempts": runner.attempts}, [
            f"{agent.name}: {state.value} after {runner.attempts} attempt(s)"
        ])
        return 1 if state.value == "exhausted" else 0
    except Exception as e:
        print(format_error(e), file=sys.stderr)
        return 1


def main() -> None:
    """Main entry point for the agent-safeguards CLI.

    Parses command-line arguments and dispatches to the appropriate
    command handler. Exits with appropriate status code.

    Exit Codes:
        0: Success
        1: Safeguard error (failed check, rollback failure, invalid input)
        2: Unexpected error
        130: Interrupted
    """
    parser = create_parser()

    try:
        args = parser.parse_args()
        settings = Settings.from_env(workspace=args.workspace, shared_dir=args.shared_dir)
        configure_logging(settings.shared_path, args.verbose)
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nOperation cancelled.", file=sys.stderr)
        sys.exit(130)
    except SafeguardError as e:
        print(format_error(e), file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
