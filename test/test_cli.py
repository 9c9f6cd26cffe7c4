"""Tests to make sure the command line interface to running workflows isn't broken."""
import argparse

import pytest
from pytest_mock import mocker  # noqa: F401 -- flake8 doesn't see it's used as fixture

from matrixbuild.cli import build_parser, completer_workflows, main
from matrixbuild.matrix import ConfigurationError
from matrixbuild.reporting import JobSummary, RunSummary


def cli_args(**kwargs):
    """Parse a bare workflow name, then override the given attributes."""
    args = build_parser().parse_args([kwargs.pop("workflow_name", "basic")])
    for key, value in kwargs.items():
        setattr(args, key, value)
    return args


def summary_with_statuses(node_specs, *statuses):
    return RunSummary([JobSummary(spec, status) for spec, status in zip(node_specs, statuses)])


def test_workflows_completer():
    """The workflows autocomplete function should return every workflow module."""
    assert completer_workflows() == ["basic", "broken_axes", "failing"]


def test_workflow_ls_output(mocker, capfd):  # noqa: F811
    """``matrixbuild ls`` should print the list of workflows."""
    mocker.patch(
        "argparse.ArgumentParser.parse_args",
        return_value=argparse.Namespace(workflow_name="ls"),
    )
    main()
    out, err = capfd.readouterr()
    assert out == "WORKFLOWS:\n\tbasic\n\tbroken_axes\n\tfailing\n"


def test_parser_flags():
    args = build_parser().parse_args(
        [
            "node_matrix",
            "-j",
            "2",
            "--fail-fast",
            "--retries",
            "3",
            "--backoff",
            "0.5",
            "--job-timeout",
            "60",
            "--prefix",
            "build-a90bca4",
        ]
    )
    assert args.workflow_name == "node_matrix"
    assert args.max_parallel == 2
    assert args.fail_fast
    assert args.retries == 3
    assert args.backoff == 0.5
    assert args.job_timeout == 60.0
    assert args.run_timeout is None
    assert args.prefix == "build-a90bca4"


def test_parser_defaults():
    args = build_parser().parse_args(["node_matrix"])
    assert args.max_parallel is None
    assert not args.fail_fast
    assert args.retries == 0
    assert not args.dry


def test_main_passes_options_to_run_workflow(mocker, node_specs):  # noqa: F811
    mocker.patch(
        "argparse.ArgumentParser.parse_args",
        return_value=cli_args(max_parallel=2, fail_fast=True, retries=1, dry=True),
    )
    run = mocker.patch(
        "matrixbuild.workflow.run_workflow",
        return_value=(summary_with_statuses(node_specs, "succeeded"), None),
    )
    main()

    run.assert_called_once()
    assert run.call_args.args == ("basic",)
    kwargs = run.call_args.kwargs
    assert kwargs["max_parallel"] == 2
    assert kwargs["fail_fast"]
    assert kwargs["max_retries"] == 1
    assert kwargs["dry"]
    assert kwargs["archive"]
    assert kwargs["log"]


def test_main_exits_nonzero_on_failed_job(mocker, node_specs):  # noqa: F811
    mocker.patch("argparse.ArgumentParser.parse_args", return_value=cli_args())
    mocker.patch(
        "matrixbuild.workflow.run_workflow",
        return_value=(summary_with_statuses(node_specs, "succeeded", "failed"), None),
    )
    with pytest.raises(SystemExit) as exit_info:
        main()
    assert exit_info.value.code == 1


def test_main_exits_on_configuration_error(mocker):  # noqa: F811
    mocker.patch("argparse.ArgumentParser.parse_args", return_value=cli_args())
    mocker.patch(
        "matrixbuild.workflow.run_workflow",
        side_effect=ConfigurationError("axis 'version' has no labels"),
    )
    with pytest.raises(SystemExit) as exit_info:
        main()
    assert exit_info.value.code == 2


def test_main_exits_on_negative_retention(configured_test_manager, mocker):  # noqa: F811
    """An invalid retention should exit with the configuration error code instead of a
    traceback."""
    mocker.patch(
        "argparse.ArgumentParser.parse_args",
        return_value=cli_args(retention_days=-1, no_log=True, quiet=True),
    )
    with pytest.raises(SystemExit) as exit_info:
        main()
    assert exit_info.value.code == 2
