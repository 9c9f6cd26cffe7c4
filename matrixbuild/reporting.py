"""Functions and classes for summarizing and reporting on a finished run: the run
summary itself (every job with its terminal status and artifact names), console
tables, and an HTML report with a status table, a matrix map, and a job timeline.
"""

import datetime
import html
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import List

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from graphviz import Digraph
from graphviz.backend import ExecutableNotFound
from rich import get_console
from rich.table import Table

from matrixbuild import utils
from matrixbuild.executor import JobResult, JobStatus
from matrixbuild.matrix import JobSpec

STATUS_COLORS = {
    "succeeded": "#9acd32",
    "failed": "#fa8072",
    "cancelled": "#c0c0c0",
    "running": "#00bfff",
    "pending": "#ffdab9",
}
"""Colors used for job statuses in graphs and the HTML table."""

RICH_STATUS_STYLES = {
    "succeeded": "green",
    "failed": "red",
    "cancelled": "yellow",
    "running": "cyan",
    "pending": "white",
}


@dataclass
class JobSummary:
    """The externally visible outcome of a single job."""

    spec: JobSpec
    status: str
    artifact_names: list[str] = field(default_factory=list)
    error: str = None
    attempts: int = 0
    started: datetime.datetime = None
    ended: datetime.datetime = None

    @property
    def duration(self) -> float:
        if self.started is None or self.ended is None:
            return 0.0
        return (self.ended - self.started).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job": self.spec.as_dict(),
            "hash": self.spec.hash,
            "status": self.status,
            "artifacts": list(self.artifact_names),
            "error": self.error,
            "attempts": self.attempts,
            "started": self.started.isoformat() if self.started is not None else None,
            "ended": self.ended.isoformat() if self.ended is not None else None,
        }


@dataclass
class RunSummary:
    """Every job spec of a run, in matrix order, with its terminal status and the names
    of all the artifacts it produced."""

    jobs: list[JobSummary]
    reference: str = ""

    @classmethod
    def from_results(
        cls, specs: list[JobSpec], results: dict[JobSpec, JobResult], reference: str = ""
    ) -> "RunSummary":
        """Build a summary from executor results, ordered by the passed specs.

        Specs without a result (which only happens if a run was torn down abnormally)
        are listed as ``cancelled``.
        """
        jobs = []
        for spec in specs:
            result = results.get(spec)
            if result is None:
                jobs.append(JobSummary(spec, str(JobStatus.cancelled), error="No result"))
                continue
            status = result.status
            if not status.terminal:
                status = JobStatus.cancelled
            jobs.append(
                JobSummary(
                    spec,
                    str(status),
                    result.artifact_names,
                    result.error,
                    result.attempts,
                    result.started,
                    result.ended,
                )
            )
        return cls(jobs, reference)

    @property
    def succeeded(self) -> bool:
        """A run only succeeded if no job failed or was cancelled."""
        return all(job.status == "succeeded" for job in self.jobs)

    @property
    def artifact_count(self) -> int:
        return sum(len(job.artifact_names) for job in self.jobs)

    @property
    def artifact_names(self) -> list[str]:
        return [name for job in self.jobs for name in job.artifact_names]

    def counts(self) -> dict[str, int]:
        counts = {"succeeded": 0, "failed": 0, "cancelled": 0}
        for job in self.jobs:
            counts[job.status] = counts.get(job.status, 0) + 1
        return counts

    def get(self, spec: JobSpec) -> JobSummary:
        for job in self.jobs:
            if job.spec == spec:
                return job
        raise KeyError(str(spec))

    def to_dict(self) -> dict:
        return {
            "reference": self.reference,
            "succeeded": self.succeeded,
            "counts": self.counts(),
            "artifact_count": self.artifact_count,
            "jobs": [job.to_dict() for job in self.jobs],
        }

    def to_dataframe(self) -> pd.DataFrame:
        """One row per job, one column per axis plus status/attempts/duration/artifacts."""
        rows = []
        for job in self.jobs:
            row = job.spec.as_dict()
            row["status"] = job.status
            row["attempts"] = job.attempts
            row["duration"] = job.duration
            row["artifacts"] = ", ".join(job.artifact_names)
            row["error"] = job.error if job.error is not None else ""
            rows.append(row)
        return pd.DataFrame(rows)

    def lines(self) -> list[str]:
        """Plain text rendering, one line per job."""
        output = []
        for job in self.jobs:
            line = f"{job.spec.name}: {job.status}"
            if len(job.artifact_names) > 0:
                line += f" [{', '.join(job.artifact_names)}]"
            if job.error is not None:
                line += f" ({job.error})"
            output.append(line)
        return output

    def render_table(self) -> Table:
        """Get a rich table of the summary for printing to the console."""
        title = f"Run summary {self.reference}" if self.reference else "Run summary"
        table = Table(title=title)
        axes = self.jobs[0].spec.axes if len(self.jobs) > 0 else ()
        for axis in axes:
            table.add_column(axis)
        table.add_column("status")
        table.add_column("time", justify="right")
        table.add_column("artifacts")
        for job in self.jobs:
            style = RICH_STATUS_STYLES.get(job.status, "white")
            table.add_row(
                *job.spec.labels,
                f"[{style}]{job.status}[/{style}]",
                utils.human_readable_time(job.duration),
                "\n".join(job.artifact_names) if job.error is None else job.error,
            )
        return table

    def print(self, console=None):
        if console is None:
            console = get_console()
        console.print(self.render_table())
        counts = self.counts()
        console.print(
            f"{len(self.jobs)} jobs: {counts['succeeded']} succeeded, "
            f"{counts['failed']} failed, {counts['cancelled']} cancelled, "
            f"{self.artifact_count} artifacts"
        )


def map_matrix_svg(summary: RunSummary) -> Digraph:
    """Create a graphviz dot graph of the matrix, one cluster per label of the first axis
    and one node per job colored by its status.

    Important:
        For this function to render successfully, graphviz must be installed.
    """
    dot = Digraph()
    dot.attr(compound="true")
    dot.attr(fontsize="10")
    dot.attr(nodesep=".15")
    dot.attr(ranksep=".15")

    groups = {}
    for job in summary.jobs:
        groups.setdefault(job.spec.labels[0], []).append(job)

    for index, (label, jobs) in enumerate(groups.items()):
        with dot.subgraph(name=f"cluster_{index}") as c:
            c.attr(label=label)
            c.attr(style="rounded")
            for job in jobs:
                c.node(
                    job.spec.hash,
                    label=f"{job.spec.name}\n{job.status}",
                    shape="box",
                    style="filled",
                    fillcolor=STATUS_COLORS.get(job.status, "white"),
                    fontsize="10",
                )

    dot.format = "svg"
    return dot


def render_graph(graph):
    """Attempts to return the unicode text for the graph svg."""
    try:
        return graph.pipe().decode("utf-8")
    except ExecutableNotFound:
        logging.error("Graphviz executable not found, cannot render the matrix map.")
        return "<p style='color: red'>No graphviz executable found, cannot render the matrix map.</p>"
    except Exception as e:
        logging.error("Graphviz error: %s", e)
        return f"<p style='color: red'>{e}</p>"


def timeline_figure(summary: RunSummary):
    """Create a matplotlib gantt style figure of when each job ran, which makes the
    effective parallelism of a run visible."""
    ran = [job for job in summary.jobs if job.started is not None]
    fig, ax = plt.subplots(figsize=(8, max(2, 0.35 * len(summary.jobs))))
    if len(ran) > 0:
        run_start = min(job.started for job in ran)
        positions = np.arange(len(ran))
        offsets = np.array([(job.started - run_start).total_seconds() for job in ran])
        durations = np.array([job.duration for job in ran])
        colors = [STATUS_COLORS.get(job.status, "white") for job in ran]
        ax.barh(positions, durations, left=offsets, color=colors, edgecolor="black")
        ax.set_yticks(positions)
        ax.set_yticklabels([job.spec.name for job in ran])
        ax.invert_yaxis()
    ax.set_xlabel("seconds since run start")
    ax.set_title("Job timeline")
    fig.tight_layout()
    return fig


def render_report_head(manager, stylesheet: bool = True) -> List[str]:
    """Generates the report head tag, linking ``style.css`` only if the report has one."""
    html_lines = [f"<head><title>{manager.workflow_name}/{manager.run_number}</title>"]
    if stylesheet:
        html_lines.append("<link rel='stylesheet' href='style.css'>")
    html_lines.append("</head>")
    return html_lines


def render_report_info_block(manager) -> List[str]:
    """Generate the header and block of metadata at the top of the report."""
    html_lines = []

    status_color = ""
    if manager.status == "incomplete":
        status_color = "orange"
    elif manager.status == "complete":
        status_color = "green"
    elif manager.status == "error":
        status_color = "red"
    elif manager.status == "LIVE":
        status_color = "cyan"
    status_line = (
        f"<b><span style='color: {status_color}'>{manager.status.upper()}</span></b>"
    )
    if manager.status == "error" and manager.error is not None:
        status_line += " - " + html.escape(manager.error)

    html_lines.append(
        f"<h1 id='title'>Report: {manager.workflow_name} - {manager.run_number}</h1>"
    )
    html_lines.extend(
        [
            "<div id='run-info-block'>",
            f"<p>Workflow name: <b>{manager.workflow_name}</b> </br>",
            f"Run number: <b>{manager.run_number}</b></br>",
            f"Run timestamp: <b>{manager.run_timestamp.strftime('%m/%d/%Y %H:%M:%S')}</b></br>",
            f"Reference: <b>{manager.get_reference_name()}</b></br>",
            f"Hostname: <b>{manager.hostname}</b></br>",
            f"Run status: {status_line}</br>",
            f"Git commit: {manager.git_commit_hash}</br>",
            f"Artifact prefix: <b>{manager.prefix}</b></br>",
            f"Retention: {manager.retention.duration}</br></p>",
            "</div>",
            f"<p id='run-string'>Run string: <pre>{html.escape(manager.run_line)}</pre></p>",
        ]
    )
    return html_lines


def render_report_toc() -> List[str]:
    """Render table of contents for the overall report."""
    return [
        "<h2>Table of Contents</h2>",
        "<ul id='toc'>",
        "<li><a href='#jobs'>Jobs</a></li>",
        "<li><a href='#map'>Matrix map</a></li>",
        "<li><a href='#timeline'>Timeline</a></li>",
        "<li><a href='#artifacts'>Artifacts</a></li>",
        "</ul>",
    ]


def render_report_jobs_table(summary: RunSummary) -> List[str]:
    df = summary.to_dataframe()
    return [
        "<a name='jobs'></a>",
        "<h2>Jobs</h2>",
        df.to_html(index=False, border=1, escape=True),
    ]


def render_report_matrix_map(summary: RunSummary) -> List[str]:
    return [
        "<a name='map'></a>",
        "<h2>Matrix map</h2>",
        render_graph(map_matrix_svg(summary)),
    ]


def render_report_timeline(summary: RunSummary, graphs_path: str) -> List[str]:
    fig = timeline_figure(summary)
    fig.savefig(os.path.join(graphs_path, "timeline.png"), format="png")
    plt.close(fig)
    return [
        "<a name='timeline'></a>",
        "<h2>Timeline</h2>",
        "<img src='graphs/timeline.png'>",
    ]


def render_report_artifacts(summary: RunSummary) -> List[str]:
    html_lines = ["<a name='artifacts'></a>", "<h2>Artifacts</h2>", "<ul>"]
    for job in summary.jobs:
        for name in job.artifact_names:
            html_lines.append(f"<li>{html.escape(name)}</li>")
    html_lines.append("</ul>")
    return html_lines


def prepare_report_path(output_path, report_name):
    """Set up any necessary folders for a report at the given location. This will not error if
    the location already has a report in it, but will remove existing graphs."""

    folder_path = os.path.join(output_path, report_name)
    logging.info("Preparing report path '%s'..." % folder_path)

    graphs_path = os.path.join(folder_path, "graphs")
    if os.path.exists(graphs_path):
        shutil.rmtree(graphs_path)

    os.makedirs(folder_path, exist_ok=True)
    os.mkdir(graphs_path)

    return folder_path, graphs_path


def run_report(manager, output_path, name, css_path=None):
    """Generate a full HTML report for the given manager's finished run.

    Args:
        manager (RunManager): The manager of the run to report on.
        output_path (str): The string path to the root directory of where you want the report stored.
        name (str): The name to store this report under (will generate a folder of this name in the
            output_path.)
        css_path (str): The path to a css file to use for styling the report. (This file will get
            copied into the output_path/name folder.)

    Returns:
        The path to the report folder.
    """
    summary = manager.summary
    folder_path, graphs_path = prepare_report_path(output_path, name)

    stylesheet = False
    if css_path is not None:
        if not os.path.exists(css_path):
            logging.warning("Reports CSS file %s not found" % css_path)
        else:
            shutil.copyfile(css_path, os.path.join(folder_path, "style.css"))
            stylesheet = True

    html_lines = ["<html>"]
    html_lines.extend(render_report_head(manager, stylesheet))
    html_lines.append("<body>")
    html_lines.extend(render_report_info_block(manager))
    html_lines.extend(render_report_toc())
    html_lines.extend(render_report_jobs_table(summary))
    html_lines.extend(render_report_matrix_map(summary))
    html_lines.extend(render_report_timeline(summary, graphs_path))
    html_lines.extend(render_report_artifacts(summary))
    html_lines.append("</body></html>")

    with open(os.path.join(folder_path, "index.html"), "w") as outfile:
        outfile.writelines(html_lines)

    with open(os.path.join(folder_path, "run_info.json"), "w") as outfile:
        json.dump(manager.run_info, outfile, indent=4)

    with open(os.path.join(folder_path, "summary.json"), "w") as outfile:
        json.dump(summary.to_dict(), outfile, indent=4)

    return folder_path


def update_report_index(reports_root_dir):
    """Generate an index.html with a summary line for each run report in the passed directory.

    Args:
        reports_root_dir (str): The directory containing the report folders. This is where the
            output index.html is placed.
    """
    logging.info("Updating report index...")

    runs = []
    for filename in os.listdir(reports_root_dir):
        full_filename = os.path.join(reports_root_dir, filename)
        info_path = os.path.join(full_filename, "run_info.json")
        if not os.path.isdir(full_filename) or not os.path.exists(info_path):
            continue
        with open(info_path, "r") as infile:
            info = json.load(infile)
        if info is None:
            continue
        info["order_timestamp"] = datetime.datetime.strptime(
            info["timestamp"], utils.TIMESTAMP_FORMAT
        )
        runs.append(info)

    logging.info("    %s reports found", str(len(runs)))

    html_lines = ["<html>", "<head><title>Reports Index</title>"]
    if os.path.exists(os.path.join(reports_root_dir, "style.css")):
        html_lines.append("<link rel='stylesheet' href='style.css'>")
    html_lines += [
        "</head>",
        "<body>",
        "<h1 id='title'>Reports</h1>",
        "<ul>",
    ]
    runs = sorted(runs, key=lambda i: i["order_timestamp"], reverse=True)
    for run in runs:
        html_lines.append(_get_run_index_line(run))
    html_lines.extend(["</ul>", "</body></html>"])

    with open(os.path.join(reports_root_dir, "index.html"), "w") as outfile:
        outfile.writelines(html_lines)


def _get_run_index_line(run):
    desc_line = "<li>"

    if run["status"] == "complete":
        desc_line += "<span style='background-color: green'>&nbsp;&nbsp;</span>"
    elif run["status"] == "incomplete":
        desc_line += "<span style='background-color: orange'>&nbsp;&nbsp;</span>"
    elif run["status"] == "error":
        desc_line += "<span style='background-color: red'>&nbsp;&nbsp;</span>"

    desc_line += f" <a href='{run['reference']}/index.html'>{run['reference']}</a> "

    if "hostname" in run:
        desc_line += f"[{run['hostname']}] "

    desc_line += (
        f"{run.get('job_count', 0)} jobs, {run.get('failed', 0)} failed, "
        f"{run.get('cancelled', 0)} cancelled, {run.get('artifact_count', 0)} artifacts "
    )

    if run["status"] == "error" and "error" in run:
        desc_line += f"<span style='color: red'>{html.escape(str(run['error']))}</span> "

    desc_line += f"</br>&nbsp;&nbsp;&nbsp;&nbsp;&nbsp;<span style='color: #a0a0a0; font-family: monospace'>{html.escape(run['cli'])}</span>"
    desc_line += "</li>"

    return desc_line
