""" Helper and utility functions for the library. """

import json
import logging
import os
import platform
import subprocess
import sys
import threading

from rich import get_console, reconfigure
from rich.logging import RichHandler

TIMESTAMP_FORMAT = "%Y-%m-%d-T%H%M%S"
"""The datetime format string used for timestamps in run reference names."""
CONFIGURATION_FILE = "matrixbuild_config.json"
"""The expected configuration filename."""

CONFIGURATION_DEFAULTS = {
    "workflows_module_name": "workflows",
    "manager_cache_path": "data/",
    "archive_path": "data/artifacts",
    "logs_path": "logs/",
    "reports_path": "reports/",
    "report_css_path": "reports/style.css",
    "max_parallel": 4,
    "retention_days": 30,
    "artifact_kinds": ["text", "json", "md"],
}
"""The configuration values used for any keys missing from the configuration file."""


def get_configuration() -> dict:
    """Load the configuration file if available, with defaults for any
    keys not found. The config file should be "matrixbuild_config.json"
    in the project root.

    The defaults are:

    .. code-block:: json

        {
            "workflows_module_name": "workflows",
            "manager_cache_path": "data/",
            "archive_path": "data/artifacts",
            "logs_path": "logs/",
            "reports_path": "reports/",
            "report_css_path": "reports/style.css",
            "max_parallel": 4,
            "retention_days": 30,
            "artifact_kinds": ["text", "json", "md"]
        }

    Returns:
        the dictionary of configuration keys/values.
    """

    # try to find configuration file in this dir or parent dirs
    search_depth = 3
    prefix = ""
    while not os.path.exists(f"{prefix}{CONFIGURATION_FILE}") and search_depth > 0:
        prefix += "../"
        search_depth -= 1

    if os.path.exists(f"{prefix}{CONFIGURATION_FILE}"):
        with open(f"{prefix}{CONFIGURATION_FILE}") as infile:
            config = json.load(infile)

        # in case of any values that don't exist in explicit config
        for key in CONFIGURATION_DEFAULTS:
            if key not in config:
                config[key] = CONFIGURATION_DEFAULTS[key]

        # update paths if in subdir
        # NOTE: this doesn't update module names, running workflows from a subdirectory
        # still requires the correct current directory.
        for key in config:
            if key.endswith("_path"):
                config[key] = f"{prefix}{config[key]}"
    else:
        config = dict(CONFIGURATION_DEFAULTS)

    return config


def human_readable_mem_usage(byte_count: int) -> str:
    """Takes the given byte count and returns a nicely formatted string that includes the suffix (K/M/GB).

    Args:
        byte_count (int): The number of bytes to convert into KB/MB/GB.
    """

    negative = False
    if byte_count < 0:
        negative = True
        byte_count *= -1

    suffix = "B"
    if byte_count > 10**9:
        suffix = "GB"
        byte_count /= 10**9
    elif byte_count > 10**6:
        suffix = "MB"
        byte_count /= 10**6
    elif byte_count > 10**3:
        suffix = "KB"
        byte_count /= 10**3

    if negative:
        return f"-{byte_count:.2f}{suffix}"
    return f"{byte_count:.2f}{suffix}"


def human_readable_time(seconds: float) -> str:
    """Takes the given time in seconds and returns a nicely formatted string that includes the suffix.

    Args:
        seconds (float): The time in seconds to convert.
    """

    converted = seconds
    suffix = "s"

    if seconds > 60 * 60:
        suffix = "h"
        converted /= 60 * 60
    elif seconds > 60:
        suffix = "m"
        converted /= 60
    elif seconds < 0.0000001:
        suffix = "ns"
        converted *= 10**9
    elif seconds < 0.0001:
        suffix = "us"
        converted *= 10**6
    elif seconds < 0.1:
        suffix = "ms"
        converted *= 10**3

    return f"{converted:.2f}{suffix}"


def get_command_output(cmd, silent=False) -> str:
    """Runs the command passed and returns the full string output of the command
    (minus the final newline).

    Args:
        cmd: Either a string command or array of strings, as one would pass to
            :code:`subprocess.run()`
    """
    try:
        cmd_return = subprocess.run(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL
        )
    except OSError:
        # e.g. calling git when git isn't on the path
        if not silent:
            logging.warning("Unable to run command '%s'" % cmd)
        return ""
    if cmd_return.returncode == 0:
        return cmd_return.stdout.decode("utf-8").rstrip("\r\n")
    return ""


def get_current_commit() -> str:
    """Returns printed output from running :code:`git rev-parse HEAD` command."""
    return get_command_output(["git", "rev-parse", "HEAD"], silent=True)


def get_os() -> str:
    """Get the current OS name and version."""
    return str(platform.platform())


_LOG_CONTEXT = threading.local()


def set_logging_prefix(prefix):
    """Set the prefix content of the logger for the current thread, which is incorporated in
    the log formatter. Job worker threads use this to tag each message with the job it came
    from."""
    _LOG_CONTEXT.prefix = prefix


def get_logging_prefix() -> str:
    return getattr(_LOG_CONTEXT, "prefix", "")


def _install_prefix_factory():
    # https://stackoverflow.com/questions/17558552/how-do-i-add-custom-field-to-python-log-format-string
    old_factory = logging.getLogRecordFactory()
    if getattr(old_factory, "_matrixbuild_prefix", False):
        return

    def new_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.prefix = get_logging_prefix()
        return record

    new_factory._matrixbuild_prefix = True
    logging.setLogRecordFactory(new_factory)


def init_logging(
    log_path=None,
    level=logging.INFO,
    log_errors=False,
    include_thread=False,
    no_color=False,
    quiet=False,
    plain=False,
    all_loggers=False,
):
    """Sets up logging configuration, including the associated file output.

    Args:
        log_path (str): File to write the log into. If :code:`None`, only log
            to console.
        level: The logging level to output.
        log_errors (bool): Whether to redirect stderr into the log.
        include_thread (bool): Whether to include the thread name in the log output,
            useful to see which worker ran which job.
        no_color (bool): Suppress colors in console output.
        quiet (bool): Suppress all console log output.
        plain (bool): Output plain text log rather than rich output.
        all_loggers (bool): Keep loggers from other libraries enabled.
    """
    if include_thread:
        plain_log_formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] {%(threadName)s} - %(prefix)s%(message)s"
        )
        rich_log_formatter = logging.Formatter(
            "{%(threadName)s} - %(prefix)s%(message)s"
        )
    else:
        plain_log_formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] - %(prefix)s%(message)s"
        )
        rich_log_formatter = logging.Formatter("%(prefix)s%(message)s")
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.propagate = False
    root_logger.handlers = []

    if plain:
        # 4 characters so that it lines up all nice
        logging.addLevelName(logging.DEBUG, "DBUG")

    _install_prefix_factory()
    set_logging_prefix("")

    if log_path is not None:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(plain_log_formatter)
        root_logger.addHandler(file_handler)

    if plain and not quiet:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(plain_log_formatter)
        root_logger.addHandler(console_handler)

    if not plain:
        if no_color:
            reconfigure(no_color=True)
        if not quiet:
            console_handler = RichHandler(
                console=get_console(),
                show_time=True,
                show_level=True,
                show_path=True,
                rich_tracebacks=True,
                log_time_format="%X",
                keywords=["-----", "succeeded", "failed", "cancelled"],
            )
            console_handler.setFormatter(rich_log_formatter)
            root_logger.addHandler(console_handler)

    # https://stackoverflow.com/questions/27538879/how-to-disable-loggers-from-other-modules
    if not all_loggers:
        for name, logger in logging.root.manager.loggerDict.items():
            if isinstance(logger, logging.Logger):
                logger.disabled = True

    if log_errors:
        sys.stderr = StreamToLogger(logging.ERROR)


# https://stackoverflow.com/questions/19425736/how-to-redirect-stdout-and-stderr-to-logger-in-python
class StreamToLogger:
    def __init__(self, level):
        self.level = level

    def write(self, buf):
        for line in buf.rstrip().splitlines():
            logging.log(self.level, line.rstrip())

    def flush(self):
        pass
