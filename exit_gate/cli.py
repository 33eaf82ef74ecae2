#!/usr/bin/env python3
"""
Exit Gate CLI

Hook entry points and operator commands for the exit gate.

Usage:
    exit-gate stop-hook              Decide whether the session may end
    exit-gate session-start          Clean up and report tasks to resume
    exit-gate start "task"           Begin a new session at PLAN
    exit-gate status                 Show session and signal status
    exit-gate transition REVIEW      Request a phase transition
    exit-gate force-exit             Allow the next exit unconditionally
    exit-gate force-complete "why"   Accept the work as complete
    exit-gate ack-cost               Acknowledge the current cost burst
    exit-gate clear-escalation       Remove the escalation marker
    exit-gate track-failure ID ERR   Record a failed attempt at a task
    exit-gate lock acquire|release|status
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .config import DEFAULT_CONFIG_FILE, GateConfig, load_config
from .costs import CostGuard
from .errors import ConfigurationError, ExitGateError, InvalidTransition
from .escalation import EscalationManager
from .gate import GateEvaluator
from .locks import LockManager, default_agent_id
from .logging_setup import configure_logging
from .phases import allowed_targets, request_transition
from .schema import ComplexityTier
from .session import session_start, start_session
from .store import FileSignalStore, OverrideKind
from .utils import isoformat_z, utc_now

logger = logging.getLogger(__name__)


# ============================================================================
# Helpers
# ============================================================================

def get_config(args) -> GateConfig:
    """Load configuration for the command, exiting with code 1 if invalid."""
    working_dir = Path(args.dir or '.')
    config_file = Path(args.config) if args.config else None

    if config_file is not None and not config_file.exists():
        print(f"Error: config file not found: {config_file}", file=sys.stderr)
        sys.exit(1)

    try:
        config = load_config(config_file, working_dir=working_dir)
    except ConfigurationError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging, verbose=args.verbose)
    return config


def get_hook_config(args) -> GateConfig:
    """
    Load configuration for a hook.

    Hooks only exit 0 or 2, so a missing or invalid config file falls back
    to the defaults with a warning instead of exiting.
    """
    working_dir = Path(args.dir or '.')
    config_file = Path(args.config) if args.config else None

    if config_file is not None and not config_file.exists():
        print(f"Warning: config file not found, using defaults: {config_file}", file=sys.stderr)
        config = GateConfig()
    else:
        try:
            config = load_config(config_file, working_dir=working_dir)
        except ConfigurationError as e:
            print(f"Warning: invalid configuration, using defaults: {e}", file=sys.stderr)
            config = GateConfig()

    configure_logging(config.logging, verbose=args.verbose)
    return config


def get_store(args, config: GateConfig) -> FileSignalStore:
    return FileSignalStore(Path(args.dir or '.'), config.store.state_dir)


def read_hook_input() -> dict:
    """Hook payload from stdin; empty or non-JSON input counts as none."""
    if sys.stdin is None or sys.stdin.isatty():
        return {}
    try:
        raw = sys.stdin.read()
        if not raw.strip():
            return {}
        data = json.loads(raw)
    except (OSError, ValueError):
        logger.warning("Ignoring unreadable hook input")
        return {}
    return data if isinstance(data, dict) else {}


# ============================================================================
# Hooks
# ============================================================================

def cmd_stop_hook(args):
    """Decide whether the session may end. Exit 0 allows, 2 blocks."""
    config = get_hook_config(args)
    read_hook_input()
    store = get_store(args, config)

    evaluator = GateEvaluator(store, limits=config.limits, agent_id=args.agent)
    outcome = evaluator.evaluate()

    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    else:
        print(outcome.render(), end='')

    line = outcome.stderr_line()
    if line:
        print(line, file=sys.stderr)
    sys.exit(outcome.exit_code)


def cmd_session_start(args):
    """Start-of-session cleanup and resume report. Always exits 0."""
    working_dir = Path(args.dir or '.')
    config = get_hook_config(args)
    read_hook_input()

    report = session_start(working_dir, config)
    if not report.empty:
        print(report.render())
    sys.exit(0)


# ============================================================================
# Session commands
# ============================================================================

def cmd_start(args):
    """Begin a new session at PLAN."""
    config = get_config(args)
    store = get_store(args, config)

    try:
        tier = ComplexityTier(args.tier or config.session.default_tier)
    except ValueError:
        print(f"Error: unknown tier {args.tier!r}", file=sys.stderr)
        sys.exit(1)

    try:
        state = start_session(store, task=args.task, tier=tier, force=args.force)
    except ExitGateError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Use --force to replace it.", file=sys.stderr)
        sys.exit(1)

    print(f"Started session: {args.task}")
    print(f"Phase: {state.phase.value}  Iterations: 0/{state.max_iterations} ({tier.value})")


def cmd_status(args):
    """Show session and signal status."""
    config = get_config(args)
    store = get_store(args, config)

    state_result = store.read_state()
    state = state_result.value
    escalation = EscalationManager(store).pending()
    lock = LockManager(store, timeout_seconds=config.limits.lock_timeout_seconds).holder()
    cost = CostGuard(store).status_summary()
    pending = store.read_backlog().value.pending(utc_now(), config.limits.task_stale_hours)
    overrides = [kind.value for kind in OverrideKind if store.has_override(kind)]

    if args.json:
        print(json.dumps({
            'state': state.to_json_dict() if state else None,
            'state_status': state_result.status.value,
            'escalation': escalation.to_json_dict() if escalation else None,
            'lock': lock.to_json_dict() if lock else None,
            'pending_tasks': [t.to_json_dict() for t in pending],
            'overrides': overrides,
        }, indent=2))
        return

    print(f"State directory: {store.describe()}")
    if state is None:
        print(f"No active session ({state_result.status.value})")
    else:
        print(f"Phase:      {state.phase.value}")
        print(f"Iteration:  {state.iteration}/{state.max_iterations}")
        print(f"Complete:   {state.complete}")
        if state.task:
            print(f"Task:       {state.task}")
        if state.last_activity:
            print(f"Activity:   {isoformat_z(state.last_activity)}")
        next_phases = ', '.join(p.value for p in allowed_targets(state.phase)) or 'none'
        print(f"Next:       {next_phases}")

    if escalation:
        print(f"\nESCALATION PENDING: task {escalation.task_id} ({escalation.failures} failures)")
    if lock:
        print(f"Lock held by {lock.agent_id}")
    if overrides:
        print(f"Override markers: {', '.join(overrides)}")
    if pending:
        print(f"\nPending tasks: {len(pending)}")
        for task in pending[:5]:
            print(f"  - [{task.status_label}] {task.content} ({task.id})")
    if cost:
        print()
        print(cost, end='')


def cmd_transition(args):
    """Request a phase transition."""
    config = get_config(args)
    store = get_store(args, config)

    try:
        state = request_transition(store, args.phase)
    except InvalidTransition as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except ExitGateError as e:
        print(f"Error: no session to transition ({e})", file=sys.stderr)
        sys.exit(1)

    print(f"Phase: {state.phase.value}")


# ============================================================================
# Operator commands
# ============================================================================

def cmd_force_exit(args):
    """Allow the next exit unconditionally."""
    config = get_config(args)
    store = get_store(args, config)
    store.place_override(OverrideKind.FORCE_EXIT)
    print(f"Placed {OverrideKind.FORCE_EXIT.value}: the next exit will be allowed")


def cmd_force_complete(args):
    """Accept the work as complete on the next exit."""
    config = get_config(args)
    store = get_store(args, config)
    store.place_override(OverrideKind.FORCE_COMPLETE, args.reason or "")
    print(f"Placed {OverrideKind.FORCE_COMPLETE.value}: the next exit will be allowed")


def cmd_ack_cost(args):
    config = get_config(args)
    store = get_store(args, config)
    guard = CostGuard(store, config.limits.cost_warning, config.limits.cost_limit)

    if args.discard:
        if guard.discard():
            print("Discarded the current cost record")
        else:
            print("No cost record to discard")
        return

    if not guard.acknowledge():
        print("Error: no readable cost record to acknowledge", file=sys.stderr)
        sys.exit(1)
    print("Cost acknowledged; the burst no longer blocks exit")


def cmd_clear_escalation(args):
    config = get_config(args)
    store = get_store(args, config)
    manager = EscalationManager(store, max_failures=config.limits.max_task_failures)

    if args.task:
        manager.clear_failures(args.task)
    if manager.clear_escalation():
        print("Escalation cleared")
    else:
        print("No escalation pending")


def cmd_track_failure(args):
    """Record a failed attempt; exit 2 once the task escalates."""
    config = get_config(args)
    store = get_store(args, config)
    manager = EscalationManager(
        store,
        max_failures=config.limits.max_task_failures,
        history_size=config.limits.failure_history,
    )

    try:
        count = manager.track_failure(args.task_id, args.error)
    except ExitGateError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    check = manager.check_escalation(args.task_id)
    print(f"Task {args.task_id}: {count} failure(s)")
    if check.escalate:
        print(f"[ESCALATE] Task {args.task_id} needs user attention", file=sys.stderr)
        sys.exit(2)


def cmd_lock(args):
    """Acquire, release or inspect the advisory lock."""
    config = get_config(args)
    store = get_store(args, config)
    locks = LockManager(store, timeout_seconds=config.limits.lock_timeout_seconds)
    agent = args.agent or default_agent_id()

    if args.lock_command == 'acquire':
        result = locks.acquire(agent)
        if not result.acquired:
            print(f"Lock held by {result.holder} ({result.age_seconds:.0f}s old)", file=sys.stderr)
            sys.exit(2)
        print(f"Lock acquired by {agent}")
    elif args.lock_command == 'release':
        if locks.release(agent):
            print(f"Lock released by {agent}")
        else:
            print(f"Lock not held by {agent}")
    else:
        holder = locks.holder()
        if holder is None:
            print("Lock is free")
        else:
            print(f"Lock held by {holder.agent_id} since {isoformat_z(holder.acquired_at)}")


# ============================================================================
# Entry point
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='exit-gate',
        description="Exit Gate - decide whether a development session may end",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  exit-gate start "Add user authentication" --tier complex
  exit-gate transition BUILD
  exit-gate stop-hook
  exit-gate track-failure task-3 "tests still failing"
  exit-gate force-complete "Reached iteration limit, work is acceptable"
        """
    )

    parser.add_argument('--dir', '-d', default='.', help='Working directory (default: current)')
    parser.add_argument('--config', '-c', help=f'Config file (default: <dir>/{DEFAULT_CONFIG_FILE})')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--version', '-v', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Stop hook
    stop_parser = subparsers.add_parser('stop-hook', aliases=['evaluate'],
                                        help='Decide whether the session may end')
    stop_parser.add_argument('--agent', help='Agent id whose lock is released on exit')
    stop_parser.add_argument('--json', action='store_true', help='Output the decision as JSON')
    stop_parser.set_defaults(func=cmd_stop_hook)

    # Session start hook
    session_parser = subparsers.add_parser('session-start', help='Clean up and report tasks to resume')
    session_parser.set_defaults(func=cmd_session_start)

    # Start
    start_parser = subparsers.add_parser('start', help='Begin a new session at PLAN')
    start_parser.add_argument('task', help='Task description')
    start_parser.add_argument('--tier', '-t', choices=[t.value for t in ComplexityTier],
                              help='Complexity tier (sets the iteration budget)')
    start_parser.add_argument('--force', '-f', action='store_true',
                              help='Replace an unfinished session')
    start_parser.set_defaults(func=cmd_start)

    # Status
    status_parser = subparsers.add_parser('status', help='Show session and signal status')
    status_parser.add_argument('--json', action='store_true', help='Output as JSON')
    status_parser.set_defaults(func=cmd_status)

    # Transition
    transition_parser = subparsers.add_parser('transition', help='Request a phase transition')
    transition_parser.add_argument('phase', help='Target phase (BUILD, REVIEW, FIX, SHIP, COMPLETE, CANCELLED)')
    transition_parser.set_defaults(func=cmd_transition)

    # Overrides
    force_exit_parser = subparsers.add_parser('force-exit', help='Allow the next exit unconditionally')
    force_exit_parser.set_defaults(func=cmd_force_exit)

    force_complete_parser = subparsers.add_parser('force-complete', help='Accept the work as complete')
    force_complete_parser.add_argument('reason', nargs='?', help='Why the work is acceptable')
    force_complete_parser.set_defaults(func=cmd_force_complete)

    # Cost
    ack_parser = subparsers.add_parser('ack-cost', help='Acknowledge the current cost burst')
    ack_parser.add_argument('--discard', action='store_true',
                            help='Remove the cost record instead of acknowledging it')
    ack_parser.set_defaults(func=cmd_ack_cost)

    # Escalation
    clear_parser = subparsers.add_parser('clear-escalation', help='Remove the escalation marker')
    clear_parser.add_argument('--task', help='Also reset this task\'s failure count')
    clear_parser.set_defaults(func=cmd_clear_escalation)

    failure_parser = subparsers.add_parser('track-failure', help='Record a failed attempt at a task')
    failure_parser.add_argument('task_id', help='Backlog task id')
    failure_parser.add_argument('error', help='What went wrong')
    failure_parser.set_defaults(func=cmd_track_failure)

    # Lock
    lock_parser = subparsers.add_parser('lock', help='Advisory lock for multi-worker bursts')
    lock_parser.add_argument('lock_command', choices=['acquire', 'release', 'status'])
    lock_parser.add_argument('--agent', help='Agent id (default: process id)')
    lock_parser.set_defaults(func=cmd_lock)

    return parser


def main(argv: Optional[list[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
