import argparse
import json
import logging
import os
import signal
import sys

from .core.analysis import CodeAnalyzer, build_graph, detect_cycles
from .core.config import load_config
from .core.context import SessionContext
from .core.errors import ConfigurationError, RestoreError, StageloomError, get_error_message
from .core.migration import FilePatchProducer, StagedMigrationRunner, load_boundaries
from .core.quality import ProcessingLog, QualityEvaluator, exit_code_for, should_auto_merge, write_report

# Process exit codes
EXIT_OK = 0
EXIT_RERUN_OR_ABORTED = 1
EXIT_ERROR = 2


def setup_logging(log_level: str = "INFO") -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr)
        ]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def cmd_analyze(args) -> int:
    config = load_config(args.config)
    analyzer = CodeAnalyzer(args.root)
    records = analyzer.analyze(args.include or config.include_patterns, args.exclude or config.exclude_patterns)
    graph = build_graph(records)
    cycles = detect_cycles(graph)

    report = {
        "files": len(records),
        "edges": graph.edge_count(),
        "errors": len(analyzer.errors),
        "cycles": [list(c.nodes) for c in cycles],
    }
    if args.json:
        report["graph"] = graph.to_dict()
        print(json.dumps(report, indent=2))
    else:
        print(f"Files analysed: {report['files']}")
        print(f"Dependency edges: {report['edges']}")
        print(f"Files skipped with errors: {report['errors']}")
        print(f"Cycles: {len(cycles)}")
        for cycle in cycles:
            print("  " + " -> ".join(cycle.closed_path()))
    return EXIT_OK


def cmd_run(args) -> int:
    overrides = {}
    if args.build_command is not None:
        overrides["build_command"] = args.build_command
    if args.test_command is not None:
        overrides["test_command"] = args.test_command
    config = load_config(args.config, overrides)
    boundaries = load_boundaries(args.boundaries)

    context = SessionContext(args.session)
    producer = FilePatchProducer(args.patch_dir) if args.patch_dir else None
    runner = StagedMigrationRunner(args.root, config, producer=producer, context=context)

    # Ctrl-C cancels gracefully (in-flight stage rolled back)
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: runner.cancel())
    try:
        result = runner.run(
            boundaries,
            session_id=context.session_id,
            resume_from=args.resume_from,
            skip_stages=args.skip or (),
        )
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    log_dir = os.path.join(os.path.abspath(args.root), config.state_dir, "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, f"{context.session_id}.jsonl")
    result.processing_log.to_jsonl(log_path)

    quality = QualityEvaluator(config.critical_patterns).evaluate(result.processing_log)
    summary = result.summary
    print(f"Session {result.session.session_id}: {result.session.status.value}")
    print(
        f"Stages: {summary.successful_stages}/{summary.total_stages} validated, "
        f"{summary.failed_stages} failed, {summary.skipped_stages} skipped"
    )
    print(f"Patches applied: {summary.applied_patches}/{summary.total_patches}")
    print(f"Processing log: {log_path}")
    print(f"Quality confidence: {quality.confidence:.1f} ({quality.recommendation})")
    merge = should_auto_merge(quality, result.session.status, config.confidence_threshold)
    print(f"Auto-merge: {'yes' if merge else 'no'}")
    for rec in result.recommendations:
        print(f"  - {rec}")
    if result.abort_report is not None:
        report = result.abort_report
        print(f"Aborted: {report.reason}")
        print(f"  Completed stages: {', '.join(report.completed_stages) or '(none)'}")
        print(f"  Still modified: {', '.join(report.modified_files) or '(none)'}")
        print(f"  Restored: {', '.join(report.restored_files) or '(none)'}")
        print(f"  Backups: {report.backup_location}")

    if args.report:
        write_report(quality, args.report)

    return EXIT_OK if result.completed else EXIT_RERUN_OR_ABORTED


def cmd_evaluate(args) -> int:
    try:
        config = load_config(args.config)
        log = ProcessingLog.load(args.log)
        critical = args.critical or config.critical_patterns
        report = QualityEvaluator(critical).evaluate(log)
    except (OSError, ValueError, StageloomError) as e:
        logger.error(f"Quality evaluation failed: {get_error_message(e)}")
        return EXIT_ERROR

    print(f"Confidence: {report.confidence:.1f}")
    print(f"Needs rerun: {'yes' if report.needs_rerun else 'no'}")
    print(f"Recommendation: {report.recommendation}")
    for reason in report.reasons:
        print(f"  ! {reason}")
    for rec in report.recommendations:
        print(f"  - {rec}")
    if report.critical_files:
        print("Critical files to reprocess:")
        for path in report.critical_files:
            print(f"  {path}")

    if args.report:
        write_report(report, args.report)
    return exit_code_for(report)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stageloom", description="Stageloom - Staged Migration Engine")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )
    parser.add_argument("--config", type=str, default=None, help="YAML config file (default: ./stageloom.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze", help="Build the dependency graph and report cycles")
    analyze.add_argument("--root", default=".", help="Project root")
    analyze.add_argument("--include", action="append", help="Include glob (repeatable)")
    analyze.add_argument("--exclude", action="append", help="Exclude glob (repeatable)")
    analyze.add_argument("--json", action="store_true", help="Print the graph as JSON")
    analyze.set_defaults(func=cmd_analyze)

    run = sub.add_parser("run", help="Run or resume a staged migration")
    run.add_argument("boundaries", help="Boundaries YAML file")
    run.add_argument("--root", default=".", help="Project root")
    run.add_argument("--patch-dir", default=None, help="Directory of prepared patches mirroring the project")
    run.add_argument("--session", default=None, help="Session id to resume (new session when omitted)")
    run.add_argument("--resume-from", default=None, help="Stage or boundary id to resume from")
    run.add_argument("--skip", action="append", help="Stage or boundary id to skip (repeatable)")
    run.add_argument("--build-command", default=None, help="Build command (overrides config)")
    run.add_argument("--test-command", default=None, help="Test command (overrides config)")
    run.add_argument("--report", default=None, help="Write the quality report JSON here")
    run.set_defaults(func=cmd_run)

    evaluate = sub.add_parser("evaluate", help="Score a processing log")
    evaluate.add_argument("log", help="Processing log (.jsonl or plain text)")
    evaluate.add_argument("--critical", action="append", help="Critical-file glob (repeatable)")
    evaluate.add_argument("--report", default=None, help="Write the quality report JSON here")
    evaluate.set_defaults(func=cmd_evaluate)
    return parser


def main(argv=None) -> int:
    """Main entry point for Stageloom."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        return args.func(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        return EXIT_ERROR
    except RestoreError as e:
        logger.critical(f"Rollback failed, manual recovery required: {e.message}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
