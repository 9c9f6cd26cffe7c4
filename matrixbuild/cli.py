"""Command line interface for running matrix workflows.

This is effectively all of the argparse and completer logic - we want the imports
in this file to be minimal so that the startup is very fast. (Use lazy imports
where it makes sense/is feasible.)

This file contains a ``__name__ == "__main__"`` and can be run directly.
"""

import argparse
import sys

import argcomplete


def completer_workflows(**kwargs) -> list[str]:
    """Argcomplete workflow name completer. This is done by scanning the workflows
    module for files with a ``def build(`` function."""
    # NOTE: importing "lazily" to reduce startup time of CLI
    from matrixbuild.workflow import list_workflows

    return list_workflows()


def cmd_run(args):
    """``matrixbuild [workflow_name]`` - run every job of the specified workflow.

    Returns:
        The run summary, or ``None`` if the run could not start.
    """
    # NOTE: importing "lazily" to reduce startup time of CLI
    import logging

    from matrixbuild import workflow
    from matrixbuild.matrix import ConfigurationError

    # reconstruct what the CLI line was, dealing with quotes
    fixed_parts = []
    for part in sys.argv[1:]:
        if " " in part and not part.startswith('"') and not part.endswith('"'):
            part = f'"{part}"'
        fixed_parts.append(part)
    run_string = "matrixbuild " + " ".join(fixed_parts)

    try:
        summary, mngr = workflow.run_workflow(
            args.workflow_name,
            max_parallel=args.max_parallel,
            fail_fast=args.fail_fast,
            max_retries=args.retries,
            retry_backoff=args.backoff,
            job_timeout=args.job_timeout,
            run_timeout=args.run_timeout,
            prefix=args.prefix,
            retention_days=args.retention_days,
            log=not args.no_log,
            log_debug=args.verbose,
            log_errors=args.log_errors,
            dry=args.dry,
            archive=not args.no_archive,
            report=not args.no_report,
            run_string=run_string,
            no_color=args.no_color,
            quiet=args.quiet,
            progress=args.progress,
            plain=args.plain,
            all_loggers=args.all_loggers,
        )
    except ConfigurationError as e:
        logging.error("Invalid workflow configuration: %s" % e)
        return None
    return summary


def cmd_ls():
    """``matrixbuild ls`` - list out valid workflows."""
    # NOTE: importing "lazily" to reduce startup time of CLI
    from matrixbuild.workflow import list_workflows

    print("WORKFLOWS:")
    for name in list_workflows():
        print("\t" + name)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run every job of a build matrix workflow and collect its artifacts.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    matrixbuild node_matrix
    matrixbuild node_matrix -j 2 --fail-fast
    matrixbuild node_matrix --retries 2 --backoff 0.5 --job-timeout 600

    matrixbuild ls  # lists all available workflows
""",
    )
    parser.add_argument("workflow_name").completer = completer_workflows

    execution_group = parser.add_argument_group(
        "Execution", "Control how the jobs of the matrix are run."
    )
    artifacts_group = parser.add_argument_group(
        "Artifacts", "Control how artifacts are named and kept."
    )
    outputs_group = parser.add_argument_group(
        "Outputs", "Control what gets created from a run."
    )
    display_group = parser.add_argument_group(
        "Display", "Configure console output during the run."
    )

    # ---- EXECUTION ----
    execution_group.add_argument(
        "-j",
        "--parallel",
        dest="max_parallel",
        type=int,
        default=None,
        help="The maximum number of jobs to run at the same time. Defaults to the configured max_parallel.",
    )
    execution_group.add_argument(
        "--fail-fast",
        dest="fail_fast",
        action="store_true",
        help="Cancel all jobs that haven't started yet as soon as any job fails.",
    )
    execution_group.add_argument(
        "--retries",
        dest="retries",
        type=int,
        default=0,
        help="How many times to retry a failing job.",
    )
    execution_group.add_argument(
        "--backoff",
        dest="backoff",
        type=float,
        default=1.0,
        help="Seconds to wait before the first retry, doubled for each following retry.",
    )
    execution_group.add_argument(
        "--job-timeout",
        dest="job_timeout",
        type=float,
        default=None,
        help="Seconds each job is allowed to take before it is marked as failed.",
    )
    execution_group.add_argument(
        "--run-timeout",
        dest="run_timeout",
        type=float,
        default=None,
        help="Seconds the whole run is allowed to take before all unfinished jobs are cancelled.",
    )

    # ---- ARTIFACTS ----
    artifacts_group.add_argument(
        "--prefix",
        dest="prefix",
        default=None,
        help="The prefix for every artifact name. Defaults to the workflow's PREFIX or build-<commit>.",
    )
    artifacts_group.add_argument(
        "--retention-days",
        dest="retention_days",
        type=float,
        default=None,
        help="How many days artifacts remain available.",
    )
    artifacts_group.add_argument(
        "--no-archive",
        dest="no_archive",
        action="store_true",
        help="Don't write the run's artifacts to the archive path.",
    )

    # ---- OUTPUTS ----
    outputs_group.add_argument(
        "--no-log",
        dest="no_log",
        action="store_true",
        help="Specify this flag to not store the log.",
    )
    outputs_group.add_argument(
        "--no-report",
        dest="no_report",
        action="store_true",
        help="Don't generate an HTML report for the run.",
    )
    outputs_group.add_argument(
        "--dry",
        dest="dry",
        action="store_true",
        help="Do a dry run: suppresses writing any files and modifying the run store.",
    )
    outputs_group.add_argument(
        "--log-errors",
        dest="log_errors",
        action="store_true",
        help="Include errors and stack traces in output logs. NOTE: this redirects stderr.",
    )
    outputs_group.add_argument(
        "--all-loggers",
        dest="all_loggers",
        action="store_true",
        help="Include loggers from all other libraries in logging output.",
    )

    # ---- DISPLAY ----
    display_group.add_argument(
        "-v",
        "--verbose",
        dest="verbose",
        action="store_true",
        help="Log at debug level.",
    )
    display_group.add_argument(
        "--quiet",
        dest="quiet",
        action="store_true",
        help="Suppress all log output to console.",
    )
    display_group.add_argument(
        "--no-color", dest="no_color", action="store_true", help="Less fancy colors."
    )
    display_group.add_argument(
        "--progress",
        dest="progress",
        action="store_true",
        help="Display a progress bar while jobs run.",
    )
    display_group.add_argument(
        "--plain",
        dest="plain",
        action="store_true",
        help="Print normal logging rather than rich colored logs.",
    )
    return parser


def main():
    """'Main' command line entrypoint, parses command line flags and makes the
    appropriate ``run_workflow()`` call as relevant. Exits with a non-zero code if
    any job failed or was cancelled."""
    parser = build_parser()
    argcomplete.autocomplete(parser, always_complete_options=False)

    args = parser.parse_args()

    if args.workflow_name == "ls":
        cmd_ls()
        return

    summary = cmd_run(args)
    if summary is None:
        sys.exit(2)
    if not summary.succeeded:
        sys.exit(1)


if __name__ == "__main__":
    main()
