import json
import os
import shutil
import threading
import time
from datetime import datetime, timedelta

import pytest
from pytest_mock import mocker  # noqa: F401 -- flake8 doesn't see it's used as fixture

from matrixbuild.manager import RunManager
from matrixbuild.matrix import expand_matrix


@pytest.fixture()
def configuration():
    config = {
        "workflows_module_name": "test.examples.workflows",
        "manager_cache_path": "test/examples/data",
        "archive_path": "test/examples/data/artifacts",
        "logs_path": "test/examples/logs",
        "reports_path": "test/examples/reports",
        "report_css_path": "test/examples/reports/style.css",
        "max_parallel": 4,
        "retention_days": 30,
        "artifact_kinds": ["text", "json", "md"],
    }
    return config


@pytest.fixture(autouse=True)
def configuration_file(request, configuration):
    if "noautofixt" in request.keywords:
        yield
        return

    with open("matrixbuild_config.json", "w") as outfile:
        json.dump(configuration, outfile)
    yield
    try:
        os.remove("matrixbuild_config.json")
    except FileNotFoundError:
        pass


@pytest.fixture()
def configured_test_manager(
    mocker, configuration  # noqa: F811 -- mocker has to be passed in as fixture
):
    shutil.rmtree("test/examples/data", ignore_errors=True)
    mock = mocker.patch("matrixbuild.utils.get_configuration")
    mock.return_value = configuration

    mngr = RunManager("test", prefix="build-test", live_log_debug=True)
    yield mngr
    mngr.close()

    shutil.rmtree("test/examples/data", ignore_errors=True)


@pytest.fixture(scope="session", autouse=True)
def clear_proj_root():
    yield
    shutil.rmtree("test/examples/logs", ignore_errors=True)
    shutil.rmtree("test/examples/reports", ignore_errors=True)
    shutil.rmtree("test/examples/data", ignore_errors=True)


@pytest.fixture()
def node_axes():
    return [
        ("os", ["ubuntu", "windows", "macos"]),
        ("version", ["16.x", "18.x", "20.x"]),
    ]


@pytest.fixture()
def node_specs(node_axes):
    return expand_matrix(node_axes)


class FakeClock:
    """A controllable replacement for ``datetime.now``."""

    def __init__(self, start=None):
        self.now = start if start is not None else datetime(2026, 10, 18, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock():
    return FakeClock()


class ConcurrencyCounter:
    """Wraps a work function to record the most work functions ever running at once."""

    def __init__(self, duration=0.05, outputs=None):
        self.duration = duration
        self.outputs = outputs
        self.current = 0
        self.max_seen = 0
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, spec):
        with self._lock:
            self.current += 1
            self.max_seen = max(self.max_seen, self.current)
            self.calls.append(spec)
        try:
            time.sleep(self.duration)
        finally:
            with self._lock:
                self.current -= 1
        if self.outputs is not None:
            return self.outputs(spec)
        return None


@pytest.fixture()
def counter():
    return ConcurrencyCounter()


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "noautofixt: don't write the test configuration file for this test"
    )
