"""Contains the run manager, which owns the lifecycle of a single workflow run: the
artifact registry, the executor, the run store entry, logs, and the run summary."""

import logging
import os
import sys
from datetime import datetime, timedelta
from socket import gethostname

from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from matrixbuild import reporting, utils
from matrixbuild.executor import JobExecutor, WorkFunction
from matrixbuild.matrix import AxesDefinition, ConfigurationError, expand_matrix
from matrixbuild.registry import ArtifactRegistry, RetentionPolicy
from matrixbuild.store import RunStore


class RunManager:
    """This class manages the registry, executor, metadata, and options for a workflow run.

    A manager is created at the start of a run and should be ``close()``'d (or used as a
    context manager) once the run's artifacts are no longer needed.

    Args:
        workflow_name (str): The name of the workflow. This is used in the reference name
            of the run and as the default artifact prefix.
        prefix (str): The prefix for every artifact name. Defaults to ``build-<short commit>``
            when in a git repository, otherwise the workflow name.
        kinds (list[str]): The allowed artifact kinds, defaults to the configured
            ``artifact_kinds``.
        retention_days (float): How long artifacts remain accessible, defaults to the
            configured ``retention_days``.
        max_parallel (int): How many jobs run at once, defaults to the configured
            ``max_parallel``.
        fail_fast (bool): Cancel jobs that haven't started once any job fails.
        max_retries (int): Extra attempts for a failing job.
        retry_backoff (float): Seconds before the first retry, doubled for every following retry.
        job_timeout (float): Seconds each job may take.
        run_timeout (float): Seconds the whole run may take.
        dry (bool): Setting dry to true will suppress saving any files (logs, store,
            archived artifacts, reports.)
        run_line (str): The CLI command used to run the current workflow.
        clock: A function returning the current ``datetime``, passed on to the registry.
        manager_cache_path (str): The path where the run store is kept.
        archive_path (str): The path where artifacts are archived at the end of a run.
        logs_path (str): The path where run logs get stored.
        reports_path (str): The path where run reports are saved.
        report_css_path (str): The path to a CSS file to copy into each report directory.
        status_override (str): This variable is 'LIVE' by default, but is overriden by
            ``run_workflow``. 'LIVE' indicates that this manager is being used directly from
            a script or interactive terminal.
        suppress_live_log (bool): If true, on live/interactive runs don't automatically spawn a logger.
        live_log_debug (bool): If true, spawn live logger with the DEBUG level.
    """

    def __init__(
        self,
        workflow_name: str = None,
        prefix: str = None,
        kinds: list[str] = None,
        retention_days: float = None,
        max_parallel: int = None,
        fail_fast: bool = False,
        max_retries: int = 0,
        retry_backoff: float = 1.0,
        job_timeout: float = None,
        run_timeout: float = None,
        dry: bool = False,
        run_line: str = "",
        clock=None,
        manager_cache_path: str = None,
        archive_path: str = None,
        logs_path: str = None,
        reports_path: str = None,
        report_css_path: str = None,
        status_override: str = "LIVE",
        suppress_live_log: bool = False,
        live_log_debug: bool = False,
    ):
        self.workflow_name = workflow_name if workflow_name is not None else "live"
        """The name of the workflow being run."""
        self.run_timestamp = datetime.now()
        """The datetime timestamp for when the manager is initialized."""
        self.run_number = 0
        """The run counter for runs of the workflow with the given name."""
        self.git_commit_hash = ""
        """The current commit hash if a git repo is in use."""
        self.hostname = gethostname()
        """The hostname of the machine this run is on."""

        self.manager_cache_path = manager_cache_path
        """The path where the run store is kept."""
        self.archive_path = archive_path
        """The path where artifacts are archived at the end of a run."""
        self.logs_path = logs_path
        """The path where run logs get stored."""
        self.reports_path = reports_path
        """The path where run reports are saved."""
        self.report_css_path = report_css_path
        """The CSS file copied into each report, reports are unstyled if it doesn't exist."""
        self.config = {}
        """The configuration loaded from the matrixbuild config file if present."""
        self._load_config()

        self.kinds = kinds if kinds is not None else self.config["artifact_kinds"]
        if retention_days is None:
            retention_days = self.config["retention_days"]
        self.retention = RetentionPolicy(timedelta(days=retention_days))
        """The retention policy applied to every artifact registered in this run."""
        self.max_parallel = (
            max_parallel if max_parallel is not None else self.config["max_parallel"]
        )
        self.fail_fast = fail_fast
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.job_timeout = job_timeout
        self.run_timeout = run_timeout
        self.clock = clock

        self.dry = dry
        """Flag for whether to suppress all file outputs."""
        self.run_line = run_line
        """The CLI command used to run the current workflow."""
        self.run_info = None
        """The metadata block associated with this manager from the ``RunStore``."""
        self.stored = False
        """Whether this run has been added to the run store yet."""

        self.status = "incomplete" if status_override is None else status_override
        """The current status of the run: 'incomplete', 'complete', 'error', or 'LIVE' if
        the manager was created outside of ``run_workflow`` and hasn't run yet."""
        self.error = None
        """The exception class and error string, if the run failed."""

        self.specs = []
        """The expanded job specs of the current run, in matrix order."""
        self.results = {}
        """The job results of the current run keyed by job spec."""
        self.summary: reporting.RunSummary = None
        """The run summary, available once ``run()`` returns."""
        self.executor: JobExecutor = None
        self.registry: ArtifactRegistry = None
        """The artifact registry for this run, created when the run starts."""
        self.progress = None

        if not self.dry:
            for path in [self.manager_cache_path, self.logs_path]:
                if not os.path.exists(path):
                    os.makedirs(path)

        if self.status == "LIVE" and hasattr(sys, "ps1"):
            self.run_line = "(Interactive environment)"

        self.prefix = prefix
        """The prefix for every artifact name in this run."""
        self.store()
        if self.prefix is None:
            self.prefix = self.get_default_prefix()

        # start logging if from a live environment (otherwise run_workflow handles this)
        if self.status == "LIVE" and not suppress_live_log:
            log_path = os.path.join(self.logs_path, f"{self.get_reference_name()}.log")
            level = logging.DEBUG if live_log_debug else logging.INFO
            if self.dry:
                log_path = None
            utils.init_logging(log_path, level)

    def _load_config(self):
        """Populate any non-pre-existing path values with config values."""
        self.config = utils.get_configuration()
        if self.manager_cache_path is None:
            self.manager_cache_path = self.config["manager_cache_path"]
        if self.archive_path is None:
            self.archive_path = self.config["archive_path"]
        if self.logs_path is None:
            self.logs_path = self.config["logs_path"]
        if self.reports_path is None:
            self.reports_path = self.config["reports_path"]
        if self.report_css_path is None:
            self.report_css_path = self.config["report_css_path"]

    def store(self):
        """Update the RunStore with this manager's run metadata."""
        if self.dry:
            return
        store = RunStore(self.manager_cache_path)
        if self.stored:
            self.run_info = store.update_run(self)
        else:
            self.run_info = store.add_run(self)
            self.stored = True

    def get_str_timestamp(self) -> str:
        """Convert the manager's run timestamp into a string representation."""
        return self.run_timestamp.strftime(utils.TIMESTAMP_FORMAT)

    def get_reference_name(self) -> str:
        """Get the reference name of this run in the format:
        ``[workflow_name]_[run_number]_[timestamp]``
        """
        return f"{self.workflow_name}_{self.run_number}_{self.get_str_timestamp()}"

    def get_default_prefix(self) -> str:
        if self.git_commit_hash == "":
            self.git_commit_hash = utils.get_current_commit()
        if self.git_commit_hash != "":
            return f"build-{self.git_commit_hash[:7]}"
        return self.workflow_name

    def start(self) -> ArtifactRegistry:
        """Create the artifact registry for this run."""
        if self.registry is not None:
            self.registry.close()
        self.registry = ArtifactRegistry(
            self.prefix, self.kinds, self.retention, self.clock
        )
        return self.registry

    def run(self, axes: AxesDefinition, work_fn: WorkFunction) -> reporting.RunSummary:
        """Expand the passed axes into the job matrix and run ``work_fn`` for every job.

        Args:
            axes: The matrix axes, see ``matrix.expand_matrix``.
            work_fn: The function run for every job spec, returning ``(kind, payload)``
                pairs to register as artifacts.

        Raises:
            ConfigurationError: If the axes or executor options are invalid. No jobs run
                in this case, and the run is stored with an 'error' status.

        Returns:
            The ``RunSummary`` listing every job with its terminal status and artifact names.
        """
        try:
            self.specs = expand_matrix(axes)
            self.start()
            self.executor = JobExecutor(
                max_parallel=self.max_parallel,
                fail_fast=self.fail_fast,
                max_retries=self.max_retries,
                retry_backoff=self.retry_backoff,
                job_timeout=self.job_timeout,
                run_timeout=self.run_timeout,
                registry=self.registry,
            )
        except ConfigurationError as e:
            self.status = "error"
            self.error = f"{e.__class__.__name__} - {e}"
            logging.error("Invalid run configuration: %s" % e)
            self.store()
            raise

        logging.info(
            "Running %s jobs for workflow '%s' (artifact prefix '%s')"
            % (len(self.specs), self.workflow_name, self.prefix)
        )
        self.results = {}
        task_id = None
        if self.progress is not None:
            task_id = self.progress.add_task(
                self.get_reference_name(), total=len(self.specs)
            )
            self.progress.start()
        try:
            for result in self.executor.submit(self.specs, work_fn):
                self.results[result.spec] = result
                if self.progress is not None:
                    self.progress.update(task_id, advance=1)
        finally:
            if self.progress is not None:
                self.progress.stop()

        self.summary = reporting.RunSummary.from_results(
            self.specs, self.results, self.get_reference_name()
        )
        counts = self.summary.counts()
        if self.summary.succeeded:
            self.status = "complete"
        else:
            self.status = "error"
            self.error = (
                f"JobFailure - {counts['failed']} failed, {counts['cancelled']} cancelled"
            )
        logging.info(
            "Run finished: %s succeeded, %s failed, %s cancelled, %s artifacts"
            % (
                counts["succeeded"],
                counts["failed"],
                counts["cancelled"],
                self.summary.artifact_count,
            )
        )
        self.store()
        return self.summary

    def enable_progress(self):
        """Display a rich progress bar while jobs run."""
        self.progress = Progress(
            TextColumn("{task.completed}/{task.total}"),
            BarColumn(bar_width=30, pulse_style="cyan"),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
        )

    def cancel(self, reason: str = "Run cancelled"):
        """Cancel the currently executing run, if there is one."""
        if self.executor is not None:
            self.executor.cancel(reason)

    def get_run_output_path(self, *subpaths) -> str:
        """Get the path to this run's folder within the archive path."""
        return os.path.join(self.archive_path, self.get_reference_name(), *subpaths)

    def archive(self) -> str:
        """Write every live artifact of this run into its archive folder.

        Returns:
            The path to the archived manifest, or ``None`` on a dry run.
        """
        if self.dry or self.registry is None:
            return None
        return self.registry.archive(self.get_run_output_path())

    def report(self) -> str:
        """Generate the HTML report for this run and update the reports index."""
        if self.dry or self.summary is None:
            return None
        folder = reporting.run_report(
            self, self.reports_path, self.get_reference_name(), self.report_css_path
        )
        reporting.update_report_index(self.reports_path)
        return folder

    def close(self):
        """Tear down the run's registry, freeing all stored payloads."""
        if self.registry is not None:
            self.registry.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
