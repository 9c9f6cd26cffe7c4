"""This is the 'main' runnable function, which handles setting up logging,
folders, reports, and running the passed workflow.

A workflow is a python module inside the configured ``workflows_module_name``
(``workflows`` by default) that defines two functions:

.. code-block:: python

    PREFIX = "build-a90bca4"  # optional, defaults to build-<commit>
    KINDS = ["text", "json", "md"]  # optional

    def get_axes():
        return [("os", ["ubuntu", "windows", "macos"]), ("version", ["16.x", "18.x", "20.x"])]

    def build(spec):
        return [("text", f"built on {spec['os']}")]
"""

import importlib
import logging
import os
import re
import sys

from matrixbuild import utils
from matrixbuild.manager import RunManager
from matrixbuild.reporting import RunSummary


def load_workflow(workflow_name: str, config: dict = None):
    """Import the workflow module with the given name and check it has the required
    ``get_axes`` and ``build`` functions.

    Raises:
        RuntimeError: If the module is missing either function.
    """
    if config is None:
        config = utils.get_configuration()
    if os.getcwd() not in sys.path:
        sys.path.append(os.getcwd())
    module = importlib.import_module(
        f"{config['workflows_module_name']}.{workflow_name}"
    )
    for function_name in ["get_axes", "build"]:
        if not callable(getattr(module, function_name, None)):
            raise RuntimeError(
                f"Workflow '{workflow_name}' does not define a {function_name}() function."
            )
    return module


def run_workflow(  # noqa: C901
    workflow_name: str,
    max_parallel: int = None,
    fail_fast: bool = False,
    max_retries: int = 0,
    retry_backoff: float = 1.0,
    job_timeout: float = None,
    run_timeout: float = None,
    prefix: str = None,
    retention_days: float = None,
    mngr: RunManager = None,
    log: bool = False,
    log_debug: bool = False,
    log_errors: bool = False,
    dry: bool = False,
    archive: bool = True,
    report: bool = True,
    run_string: str = None,
    no_color: bool = False,
    quiet: bool = False,
    progress: bool = False,
    plain: bool = False,
    all_loggers: bool = False,
) -> tuple[RunSummary, RunManager]:
    """The workflow entrypoint function. This runs every job of the given workflow's
    matrix and collects the artifacts.

    Args:
        workflow_name (str): The name of the workflow module (without the ``.py``).
        max_parallel (int): How many jobs to run at once, defaults to the configured value.
        fail_fast (bool): Cancel jobs that haven't started once any job fails.
        max_retries (int): Extra attempts for failing jobs.
        retry_backoff (float): Seconds before the first retry, doubled for each following retry.
        job_timeout (float): Seconds each job may take.
        run_timeout (float): Seconds the whole run may take.
        prefix (str): Artifact name prefix, overrides any ``PREFIX`` in the workflow module.
        retention_days (float): How long artifacts remain accessible.
        mngr (RunManager): A run manager to use for the run. One will be automatically
            created if none is passed.
        log (bool): Whether to write a log file or not.
        log_debug (bool): Whether to include DEBUG level messages in the log.
        log_errors (bool): Whether to redirect stderr into the log.
        dry (bool): Setting dry to true will suppress saving any files (including logs), and
            will not update the run store.
        archive (bool): Write the run's artifacts into the archive path when done.
        report (bool): Generate an HTML report when done.
        run_string (str): The CLI command for the run, populated by the CLI.
        no_color (bool): Suppress colors in console output.
        quiet (bool): Suppress all console log output.
        progress (bool): Display a rich progress bar while running.
        plain (bool): Output plain text log rather than rich output.
        all_loggers (bool): Keep loggers from other libraries enabled.

    Returns:
        The run summary and the manager used for the run.
    """
    if run_string is None:
        run_string = f"matrixbuild {workflow_name}"
        if max_parallel is not None:
            run_string += f" -j {max_parallel}"
        if fail_fast:
            run_string += " --fail-fast"
        if max_retries > 0:
            run_string += f" --retries {max_retries}"
        if prefix is not None:
            run_string += f" --prefix {prefix}"
        if dry:
            run_string += " --dry"

    config = utils.get_configuration()
    module = load_workflow(workflow_name, config)

    if prefix is None:
        prefix = getattr(module, "PREFIX", None)

    if mngr is None:
        mngr = RunManager(
            workflow_name,
            prefix=prefix,
            kinds=getattr(module, "KINDS", None),
            retention_days=retention_days,
            max_parallel=max_parallel,
            fail_fast=fail_fast,
            max_retries=max_retries,
            retry_backoff=retry_backoff,
            job_timeout=job_timeout,
            run_timeout=run_timeout,
            dry=dry,
            run_line=run_string,
            status_override=None,
        )

    if log:
        log_path = os.path.join(mngr.logs_path, f"{mngr.get_reference_name()}.log")
        if dry:
            log_path = None
        level = logging.DEBUG if log_debug else logging.INFO
        utils.init_logging(
            log_path,
            level,
            log_errors,
            include_thread=mngr.max_parallel > 1,
            no_color=no_color,
            quiet=quiet,
            plain=plain,
            all_loggers=all_loggers,
        )

    logging.info("Running workflow %s" % workflow_name)
    if utils.get_current_commit() == "":
        logging.warning(
            "No git repository found, the run won't record a commit. Artifacts are prefixed with '%s'"
            % mngr.prefix
        )

    if progress:
        mngr.enable_progress()

    summary = mngr.run(module.get_axes(), module.build)

    if not quiet:
        summary.print()

    if archive and not dry:
        mngr.archive()
    if report and not dry:
        folder = mngr.report()
        logging.info("Report written to %s" % folder)

    return summary, mngr


def regex_lister(module_name, regex):
    """Scan every file in the passed module folder for the requested regex, returning the
    module names of the files that have a match."""
    names = []
    path = module_name.replace(".", "/")

    if not os.path.exists(path):
        print(
            f"\t[WARNING - path: '{path}' does not exist. Double check matrixbuild_config.json]"
        )
        return []

    for dirpath, dirnames, filenames in os.walk(path):
        for filename in filenames:
            if not filename.endswith(".py"):
                continue
            full_filename = os.path.join(dirpath, filename)
            with open(full_filename) as infile:
                matched = any(re.search(regex, line) for line in infile.readlines())
            if matched:
                name = os.path.relpath(full_filename, path)[:-3]
                names.append(name.replace(os.sep, "."))
    return names


def list_workflows():
    """Get all valid workflows, files in the workflows module that define a
    :code:`def build()` function."""
    config = utils.get_configuration()
    names = regex_lister(config["workflows_module_name"], r"^def build\(.*\)")
    names.sort()
    return names
