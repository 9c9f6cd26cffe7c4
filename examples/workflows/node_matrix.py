"""Builds a node project on every operating system/node version combination and
collects a text log, a json result, and a markdown report from each."""

import json
import random

from matrixbuild import current_context

PREFIX = "build-a90bca4"
KINDS = ["text", "json", "md"]


def get_axes():
    return [
        ("os", ["ubuntu", "windows", "macos"]),
        ("version", ["16.x", "18.x", "20.x"]),
    ]


def build(spec):
    context = current_context()
    steps = ["checkout", "setup-node", "npm ci", "npm test"]
    log_lines = []
    for step in steps:
        # simulated step duration, wakes early if the run is cancelled
        context.wait(random.uniform(0.05, 0.2))
        log_lines.append(f"[{spec['os']}/{spec['version']}] {step} ok")

    result = {"os": spec["os"], "node": spec["version"], "steps": steps, "passed": True}
    report = "\n".join(
        [
            f"# Build {spec.name}",
            "",
            "| step | status |",
            "|---|---|",
            *[f"| {step} | ok |" for step in steps],
        ]
    )
    return [
        ("text", "\n".join(log_lines)),
        ("json", json.dumps(result, indent=4)),
        ("md", report),
    ]
