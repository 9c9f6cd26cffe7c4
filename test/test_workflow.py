"""Tests for loading, listing, and running workflow modules."""

import os

import pytest
from pytest_mock import mocker  # noqa: F401 -- flake8 doesn't see it's used as fixture

from matrixbuild.matrix import ConfigurationError
from matrixbuild.workflow import list_workflows, load_workflow, run_workflow


def test_list_workflows():
    """Only modules defining a build() function should be listed."""
    assert list_workflows() == ["basic", "broken_axes", "failing"]


def test_load_workflow_without_build_raises(configuration):
    with pytest.raises(RuntimeError):
        load_workflow("helpers", configuration)


def test_run_basic_workflow(configured_test_manager):
    summary, mngr = run_workflow("basic", quiet=True, report=False)

    assert summary.succeeded
    assert len(summary.jobs) == 4
    assert summary.artifact_count == 8
    assert mngr.prefix == "build-test"
    assert mngr.workflow_name == "basic"
    assert "build-test-macos-3.12-json" in summary.artifact_names
    assert os.path.exists(mngr.get_run_output_path("artifacts.json"))
    mngr.close()


def test_run_workflow_prefix_override(configured_test_manager):
    summary, mngr = run_workflow(
        "basic", prefix="build-override", quiet=True, archive=False, report=False
    )
    assert "build-override-ubuntu-3.10-text" in summary.artifact_names
    assert not os.path.exists(mngr.get_run_output_path())
    mngr.close()


def test_run_failing_workflow(configured_test_manager):
    """A failing job should not stop the other jobs of the workflow from producing
    artifacts."""
    summary, mngr = run_workflow("failing", quiet=True, archive=False, report=False)

    assert not summary.succeeded
    assert summary.counts() == {"succeeded": 2, "failed": 1, "cancelled": 0}
    assert summary.artifact_names == ["build-test-ubuntu-text", "build-test-macos-text"]
    assert mngr.status == "error"
    mngr.close()


def test_run_workflow_fail_fast_with_single_worker(configured_test_manager):
    summary, mngr = run_workflow(
        "failing",
        max_parallel=1,
        fail_fast=True,
        quiet=True,
        archive=False,
        report=False,
    )
    assert [job.status for job in summary.jobs] == ["succeeded", "failed", "cancelled"]
    mngr.close()


def test_run_workflow_invalid_axes_raises(configured_test_manager):
    with pytest.raises(ConfigurationError):
        run_workflow("broken_axes", quiet=True, report=False)


def test_run_workflow_dry(configured_test_manager):
    summary, mngr = run_workflow("basic", dry=True, quiet=True)
    assert summary.succeeded
    assert not os.path.exists(mngr.get_run_output_path())


def test_run_workflow_with_report(configured_test_manager, mocker):  # noqa: F811
    mocker.patch("matrixbuild.reporting.render_graph", return_value="<svg></svg>")
    summary, mngr = run_workflow("basic", quiet=True)
    assert os.path.exists(
        os.path.join(mngr.reports_path, mngr.get_reference_name(), "index.html")
    )
    mngr.close()


def test_negative_retention_raises_configuration_error(configured_test_manager):
    with pytest.raises(ConfigurationError):
        run_workflow("basic", retention_days=-1, quiet=True, report=False)


@pytest.mark.parametrize("dry", [True, False])
def test_warns_without_git_even_with_module_prefix(
    configured_test_manager, mocker, dry  # noqa: F811
):
    """The basic workflow sets its own PREFIX, which shouldn't hide the missing commit."""
    mocker.patch("matrixbuild.utils.get_current_commit", return_value="")
    warning = mocker.patch("matrixbuild.workflow.logging.warning")
    summary, mngr = run_workflow("basic", dry=dry, quiet=True, archive=False, report=False)

    messages = [call.args[0] for call in warning.call_args_list]
    assert any(message.startswith("No git repository found") for message in messages)
    mngr.close()


def test_no_git_warning_with_commit(configured_test_manager, mocker):  # noqa: F811
    mocker.patch("matrixbuild.utils.get_current_commit", return_value="a90bca4f00d")
    warning = mocker.patch("matrixbuild.workflow.logging.warning")
    summary, mngr = run_workflow("basic", quiet=True, archive=False, report=False)

    messages = [call.args[0] for call in warning.call_args_list]
    assert not any(message.startswith("No git repository found") for message in messages)
    mngr.close()
