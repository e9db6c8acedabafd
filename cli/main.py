#!/usr/bin/env python3
"""
CareBrain CLI - operator interface to the intelligence core.

Run a scheduler tick by hand, inspect state and history, look at the
supervisor queue.
"""

import json
import sys
from pathlib import Path

from carebrain import config
from carebrain.bootstrap import initialize_store
from carebrain.errors import CareBrainError
from carebrain.escalation import EscalationSink
from carebrain.gateway import IdempotentGateway
from carebrain.intelligence import CorrelationEngine, TrajectoryProjector
from carebrain.observability import configure_logging
from carebrain.residents import onboard
from carebrain.state_store import VersionedStateStore


def print_header(text: str):
    """Print a section header."""
    print(f"\n{'═' * 50}")
    print(f"  {text}")
    print(f"{'═' * 50}")


def print_table(headers: list, rows: list, widths: list = None):
    """Print a simple table."""
    if not widths:
        widths = [max(len(str(row[i])) for row in [headers] + rows) for i in range(len(headers))]

    header_str = " │ ".join(str(h).ljust(w) for h, w in zip(headers, widths))
    print(header_str)
    print("─" * len(header_str))

    for row in rows:
        print(" │ ".join(str(c)[:w].ljust(w) for c, w in zip(row, widths)))


def _agency_flag(args: list) -> str | None:
    if len(args) >= 2 and args[0] == "--agency":
        return args[1]
    return None


def cmd_init(args):
    """Create the schema and seed rules."""
    result = initialize_store()
    if result["migration"]["errors"]:
        print(f"Migration failed: {result['migration']['errors']}")
        return 1
    print_header("STORE INITIALIZED")
    print(f"  Tables created:          {', '.join(result['migration']['tables_created']) or '-'}")
    print(f"  Correlation rules seeded: {', '.join(result['rules_seeded']) or '-'}")
    print(f"  Projection rule version:  {result['projection_rule_version']}")
    return 0


def cmd_onboard(args):
    """Register a resident and create its state record."""
    if len(args) < 2:
        print("Usage: onboard <resident_id> <agency_id> [display_name]")
        return 1
    display_name = " ".join(args[2:]) or None
    result = onboard(args[0], args[1], actor_id="cli", display_name=display_name)
    if not result.state.success:
        print(f"{args[0]}: {result.state.error.kind} (version {result.state.current_version})")
        return 1
    print(f"✓ Onboarded {args[0]} in {args[1]} at state version {result.state.current_version}")
    return 0


def cmd_ingest(args):
    """
    Ingest collaborator rows from a JSON file.

    The file holds a list of {"source_table": ..., "row": {...}} items
    (or {"items": [...]}). An optional second argument is used as the
    idempotency key for the whole batch.
    """
    if not args:
        print("Usage: ingest <json-file> [idempotency_key]")
        return 1
    data = json.loads(Path(args[0]).read_text())
    items = data["items"] if isinstance(data, dict) else data
    key = args[1] if len(args) > 1 else None

    submission = IdempotentGateway().submit(key, {"operation": "health_input_batch", "items": items})
    result = submission.result
    if submission.duplicate:
        print(f"Batch {key} already processed; stored result:")
    print(f"✓ {result['ingested']} row(s) read, {result['created']} new signal fact(s)")
    abnormal = [r for r in result["results"] if r["abnormality_flag"] == "ABNORMAL"]
    if abnormal:
        print(f"  {len(abnormal)} abnormal")
    return 0


def cmd_evaluate(args):
    """Run the correlation engine for a resident or an agency."""
    agency_id = _agency_flag(args)
    rest = args[2:] if agency_id else args[1:]
    window = float(rest[0]) if rest else None
    engine = CorrelationEngine(sink=EscalationSink())

    if agency_id:
        summary = engine.evaluate_agency(agency_id, window)
        events = summary.events
        print_header(f"CORRELATION - {agency_id} ({summary.residents_evaluated} residents)")
    elif args:
        events = engine.evaluate(args[0], window)
        print_header(f"CORRELATION - {args[0]}")
    else:
        print("Usage: evaluate <resident_id> [window_hours] | evaluate --agency <agency_id> [window_hours]")
        return 1

    if not events:
        print("No correlation rules fired.")
        return 0
    rows = [
        [e.resident_id, e.correlation_type, e.severity.value, f"{e.confidence_score:.2f}", "new" if e.created else "seen"]
        for e in events
    ]
    print_table(["Resident", "Type", "Severity", "Conf", ""], rows)
    for e in events:
        print(f"\n  {e.reasoning_text}")
    return 0


def cmd_project(args):
    """Project risk trajectories."""
    agency_id = _agency_flag(args)
    projector = TrajectoryProjector(sink=EscalationSink())
    if agency_id:
        risk_type = args[2] if len(args) > 2 else None
        projections = projector.project_agency(agency_id, risk_type)
    elif len(args) >= 2:
        projections = [projector.project(args[0], args[1])]
    else:
        print("Usage: project <resident_id> <risk_type> | project --agency <agency_id> [risk_type]")
        return 1

    print_header("TRAJECTORY PROJECTIONS")
    rows = []
    for p in projections:
        horizon = f"{p.escalation_horizon_hours}h" if p.escalation_horizon_hours is not None else "-"
        rows.append(
            [
                p.resident_id,
                p.risk_type,
                p.current_risk_level or "-",
                p.projected_next_level or "-",
                horizon,
                f"{p.projection_confidence:.2f}",
                p.data_sufficiency.value,
            ]
        )
    print_table(["Resident", "Risk", "Now", "Next", "Horizon", "Conf", "Data"], rows)
    return 0


def cmd_state(args):
    """Show a subject's current state."""
    if not args:
        print("Usage: state <subject_id>")
        return 1
    snapshot = VersionedStateStore().get(args[0])
    if snapshot is None:
        print(f"{args[0]}: NOT_INITIALIZED")
        return 1
    print_header(f"STATE - {args[0]} (v{snapshot.state_version})")
    for name, value in snapshot.fields.items():
        print(f"  {name:20} {value}")
    print(f"\n  Updated by {snapshot.updated_by} at {snapshot.updated_at}")
    return 0


def cmd_history(args):
    """Show a subject's transition history."""
    if not args:
        print("Usage: history <subject_id> [n]")
        return 1
    limit = int(args[1]) if len(args) > 1 else 20
    entries = VersionedStateStore().history(args[0], limit)
    print_header(f"HISTORY - {args[0]}")
    if not entries:
        print("No transitions recorded.")
        return 0
    rows = []
    for h in entries:
        changed = [k for k, v in h.new_state.items() if (h.previous_state or {}).get(k) != v]
        rows.append([f"{h.from_version}→{h.to_version}", h.actor_id, ", ".join(changed), h.reason, h.transitioned_at[:19]])
    print_table(["Ver", "Actor", "Changed", "Reason", "At"], rows)
    return 0


def cmd_queue(args):
    """Show the supervisor escalation queue."""
    agency_id = args[0] if args else None
    entries = EscalationSink().pending(agency_id)
    print_header("ESCALATION QUEUE")
    if not entries:
        print("Nothing pending.")
        return 0
    rows = [[e.severity, e.resident_id, e.source_kind, e.reason[:60]] for e in entries]
    print_table(["Severity", "Resident", "Source", "Reason"], rows)
    return 0


def cmd_help(args):
    """Show help."""
    print(f"""
CareBrain CLI

COMMANDS:

  init                          Create schema, seed rules
  onboard <res> <agency> [name] Register a resident and its state record
  ingest <json-file> [key]      Ingest collaborator rows (idempotent with a key)
  evaluate <res> [hours]        Run correlation rules for a resident
  evaluate --agency <id> [h]    Run correlation rules for an agency
  project <res> <risk_type>     Project one risk trajectory
  project --agency <id> [risk]  Project trajectories for an agency
  state <subject>               Show current versioned state
  history <subject> [n]         Show state transition history
  queue [agency]                Show pending escalations
  help                          Show this help

Database: CAREBRAIN_DB (or CAREBRAIN_HOME/data/carebrain.db)
Confidence mode: {config.CONFIDENCE_MODE}
""")
    return 0


COMMANDS = {
    "init": cmd_init,
    "onboard": cmd_onboard,
    "ingest": cmd_ingest,
    "evaluate": cmd_evaluate,
    "e": cmd_evaluate,
    "project": cmd_project,
    "p": cmd_project,
    "state": cmd_state,
    "s": cmd_state,
    "history": cmd_history,
    "queue": cmd_queue,
    "q": cmd_queue,
    "help": cmd_help,
    "h": cmd_help,
}


def main(argv: list | None = None) -> int:
    """Main entry point."""
    argv = sys.argv[1:] if argv is None else argv
    configure_logging(config.LOG_LEVEL, config.LOG_JSON)
    if not argv:
        return cmd_help([])

    cmd, args = argv[0], argv[1:]
    if cmd not in COMMANDS:
        print(f"Unknown command: {cmd}")
        print("Run 'help' for available commands.")
        return 1
    try:
        return COMMANDS[cmd](args)
    except CareBrainError as e:
        print(f"{e.kind}: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
