"""Command line interface for clinic migrations."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import MigrationSettings
from .errors import MigrationError
from .models.migration import Phase, RunStatus
from .models.canonical import resolve_entity_type
from .orchestrator import MigrationOrchestrator

logger = logging.getLogger(__name__)

# connect..promote in order; approval happens between generateMapping and transform.
PIPELINE = [
    Phase.CONNECT,
    Phase.DISCOVER,
    Phase.GENERATE_MAPPING,
    Phase.TRANSFORM,
    Phase.VALIDATE,
    Phase.PROMOTE,
]


def build_source_profile(args) -> Dict[str, Any]:
    """Assemble a source profile from --profile plus individual flags."""
    profile: Dict[str, Any] = {}
    if getattr(args, "profile", None):
        with open(args.profile) as f:
            profile = json.load(f)

    if getattr(args, "credentials", None):
        with open(args.credentials) as f:
            profile["credentials"] = json.load(f)
    if getattr(args, "source_url", None):
        profile["source_url"] = args.source_url
    if getattr(args, "api_base_url", None):
        profile["api_base_url"] = args.api_base_url

    uploads: List[Dict[str, Any]] = list(profile.get("uploaded_files") or [])
    for path in getattr(args, "upload", None) or []:
        uploads.append({
            "name": Path(path).name,
            "path": str(Path(path).resolve()),
            "entity_type": resolve_entity_type(Path(path).stem),
        })
    if uploads:
        profile["uploaded_files"] = uploads
    return profile


def print_json(data: Any):
    print(json.dumps(data, indent=2, default=str))


def cmd_start(orchestrator: MigrationOrchestrator, args) -> int:
    run = orchestrator.start_run(args.clinic, args.vendor, build_source_profile(args), actor_id=args.actor)
    print_json(run.to_dict())
    return 0


def cmd_phase(orchestrator: MigrationOrchestrator, args) -> int:
    outcome = orchestrator.run_phase(args.run_id, args.phase, actor_id=args.actor)
    print_json(outcome.to_dict())
    return 0 if outcome.succeeded else 1


def cmd_approve(orchestrator: MigrationOrchestrator, args) -> int:
    print_json(orchestrator.approve_mapping(args.run_id, args.actor))
    return 0


def cmd_pause(orchestrator: MigrationOrchestrator, args) -> int:
    print_json(orchestrator.pause(args.run_id, args.actor).to_dict())
    return 0


def cmd_resume(orchestrator: MigrationOrchestrator, args) -> int:
    print_json(orchestrator.resume(args.run_id, args.actor).to_dict())
    return 0


def cmd_report(orchestrator: MigrationOrchestrator, args) -> int:
    report = orchestrator.get_report(args.run_id)
    if args.output:
        with open(args.output, "w") as f:
            json.dump(report, f, indent=2, default=str)
        logger.info(f"Saved report to {args.output}")
    else:
        print_json(report)
    return 0


def cmd_run(orchestrator: MigrationOrchestrator, args) -> int:
    """Start a run and drive it through every phase."""
    run = orchestrator.start_run(args.clinic, args.vendor, build_source_profile(args), actor_id=args.actor)
    print(f"Run {run.id}: {run.source_vendor} via {run.ingest_strategy.value}")
    return drive(orchestrator, run.id, args.actor, args.approve_as)


def drive(
    orchestrator: MigrationOrchestrator,
    run_id: str,
    actor_id: Optional[str],
    approve_as: Optional[str] = None
) -> int:
    """
    Run the remaining phases in order.

    Stops at MappingReview unless approve_as is given, and at the first
    phase that does not succeed.

    Returns:
        Process exit code
    """
    for phase in PIPELINE:
        run = orchestrator.get_run(run_id)
        if run.status.is_terminal:
            break

        if phase == Phase.TRANSFORM and not run.mapping_approved:
            if not approve_as:
                print(f"Mapping v{run.mapping_spec_version} awaits approval: clinic-migrate approve {run_id}")
                return 0
            orchestrator.approve_mapping(run_id, approve_as)

        outcome = orchestrator.run_phase(run_id, phase, actor_id=actor_id)
        print(f"  {phase.value:<16} -> {outcome.run.status.value}")
        if not outcome.succeeded:
            print(f"  {outcome.error.message}")
            return 1

    run = orchestrator.get_run(run_id)
    if run.status == RunStatus.COMPLETED:
        reconciliation = orchestrator.get_report(run_id)["reconciliation"]
        print(f"Completed: {reconciliation['totals']['promotedCount']} record(s) promoted "
              f"({reconciliation['status']}, completeness {reconciliation['completeness']:.0%})")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Clinic Migration Tool - Move clinic data from a source platform into the canonical store"
    )
    parser.add_argument("--database-url", help="Override CLINIC_MIGRATE_DATABASE_URL")
    parser.add_argument("--artifact-dir", help="Override CLINIC_MIGRATE_ARTIFACT_DIR")
    parser.add_argument("--actor", default="cli", help="Actor id recorded in the audit trail")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def add_source_args(sub):
        sub.add_argument("--clinic", required=True, help="Clinic id")
        sub.add_argument("--vendor", required=True, help="Source vendor (e.g. boulevard, csv_upload)")
        sub.add_argument("--profile", help="Path to a source profile JSON file")
        sub.add_argument("--credentials", help="Path to a credentials JSON file")
        sub.add_argument("--source-url", help="Source platform URL")
        sub.add_argument("--api-base-url", help="Vendor API base URL")
        sub.add_argument("--upload", nargs="*", help="Export files (CSV / JSON / FHIR)")

    start_parser = subparsers.add_parser("start", help="Start a migration run")
    add_source_args(start_parser)

    phase_parser = subparsers.add_parser("phase", help="Run one phase")
    phase_parser.add_argument("run_id")
    phase_parser.add_argument("phase", choices=[p.value for p in Phase])

    for name, help_text in (
        ("approve", "Approve the current mapping version"),
        ("pause", "Pause a run"),
        ("resume", "Resume a paused run"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("run_id")

    report_parser = subparsers.add_parser("report", help="Show a run report")
    report_parser.add_argument("run_id")
    report_parser.add_argument("--output", help="Write the report to a file")

    run_parser = subparsers.add_parser("run", help="Start a run and drive it end to end")
    add_source_args(run_parser)
    run_parser.add_argument("--approve-as", help="Approve the drafted mapping as this actor")

    args = parser.parse_args(argv)

    settings = MigrationSettings.from_env()
    if args.database_url:
        settings.database_url = args.database_url
    if args.artifact_dir:
        settings.artifact_dir = args.artifact_dir

    # Set up logging
    log_level = logging.DEBUG if args.verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    commands = {
        "start": cmd_start,
        "phase": cmd_phase,
        "approve": cmd_approve,
        "pause": cmd_pause,
        "resume": cmd_resume,
        "report": cmd_report,
        "run": cmd_run,
    }
    if args.command not in commands:
        parser.print_help()
        return 2

    orchestrator = MigrationOrchestrator.from_settings(settings)
    try:
        return commands[args.command](orchestrator, args)
    except MigrationError as e:
        logger.error(f"{args.command} failed: {e.message}")
        print_json(e.to_dict())
        return 1
    finally:
        orchestrator.database.dispose()


if __name__ == "__main__":
    sys.exit(main())
