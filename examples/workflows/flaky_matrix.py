"""A matrix where windows jobs fail the first time they run, to try out --retries
and --fail-fast."""

import threading

from matrixbuild import current_context

_attempts = {}
_lock = threading.Lock()


def get_axes():
    return {"os": ["ubuntu", "windows"], "python": ["3.10", "3.11", "3.12"]}


def build(spec):
    with _lock:
        _attempts[spec] = _attempts.get(spec, 0) + 1
        attempt = _attempts[spec]
    current_context().wait(0.1)
    if spec["os"] == "windows" and attempt == 1:
        raise ConnectionError("package index unreachable")
    return [("text", f"python {spec['python']} on {spec['os']} passed (attempt {attempt})")]
