"""Local 'database' of runs class."""

import json
import os

from matrixbuild import utils


class RunStore:
    """Manages the mini database of metadata on previous workflow runs. This is how we
    keep track of run numbers etc. A metadata block for each run is stored in
    the manager cache path under :code:`store.json`.

    Note that the metadata blocks we keep track of for each run follows the following example:

    .. code-block:: json

        {
            "reference": "node_matrix_1_2026-10-18-T100003",
            "workflow_name": "node_matrix",
            "run_number": 1,
            "timestamp": "2026-10-18-T100003",
            "commit": "a90bca4...",
            "prefix": "build-a90bca4",
            "status": "complete",
            "cli": "matrixbuild node_matrix -j 2",
            "hostname": "mycomputer",
            "job_count": 9,
            "failed": 0,
            "cancelled": 0,
            "artifact_count": 27
        }

    Args:
        manager_cache_path (str): The path to the directory to keep the :code:`store.json`.
    """

    def __init__(self, manager_cache_path: str):
        self.runs = []
        """The list of metadata blocks for each run."""
        self.path = os.path.join(manager_cache_path, "store.json")
        """The location of the :code:`store.json`."""

        self.load()

    def load(self):
        """Load the current run database from :code:`store.json` into :code:`self.runs`."""
        if os.path.exists(self.path):
            with open(self.path, "r") as infile:
                self.runs = json.load(infile)

    def save(self):
        """Save the current database in :code:`self.runs` into the :code:`store.json` file."""
        with open(self.path, "w") as outfile:
            json.dump(self.runs, outfile, indent=4)

    def get_workflow_runs(self, workflow_name: str) -> list[dict]:
        """Get all the runs associated with the specified workflow name from the database."""
        return [run for run in self.runs if run["workflow_name"] == workflow_name]

    def get_run(self, ref_name: str):
        """Get the metadata block for the run with the specified reference name.

        Args:
            ref_name (str): The run reference name, following the
                [workflow_name]_[run_number]_[timestamp] format.

        Returns:
            A dictionary (metadata block) for the run with the requested reference name, and the
            index of the run within the total list of runs.
        """
        for index, run in enumerate(self.runs):
            if run["reference"] == ref_name:
                return run, index
        return None, -1

    def add_run(self, mngr):
        """Add a new metadata block to the store for the passed :code:`RunManager` instance,
        assigning it the next run number for its workflow.

        Note that this automatically calls the :code:`save()` function.

        Returns:
            The newly created dictionary (metadata block) for the manager's run.
        """
        prev_runs = self.get_workflow_runs(mngr.workflow_name)
        if len(prev_runs) == 0:
            mngr.run_number = 1
        else:
            mngr.run_number = prev_runs[-1]["run_number"] + 1
        mngr.git_commit_hash = utils.get_current_commit()

        run = {
            "reference": mngr.get_reference_name(),
            "workflow_name": mngr.workflow_name,
            "run_number": mngr.run_number,
            "timestamp": mngr.get_str_timestamp(),
            "commit": mngr.git_commit_hash,
            "prefix": mngr.prefix,
            "status": "incomplete",
            "cli": mngr.run_line,
            "hostname": mngr.hostname,
            "job_count": 0,
            "failed": 0,
            "cancelled": 0,
            "artifact_count": 0,
        }
        self.runs.append(run)

        self.save()
        return run

    def update_run(self, mngr):
        """Updates the metadata in the database for the run associated with the passed
        :code:`RunManager`, once the run has finished.

        Note that this automatically calls the :code:`save()` function.

        Returns:
            The updated dictionary (metadata block) for the run, or None if the run isn't
            found in the database.
        """
        run_info, index = self.get_run(mngr.get_reference_name())
        if index == -1:
            return None

        run_info["status"] = mngr.status
        run_info["prefix"] = mngr.prefix
        if mngr.status == "error":
            run_info["error"] = mngr.error
        if mngr.summary is not None:
            counts = mngr.summary.counts()
            run_info["job_count"] = len(mngr.summary.jobs)
            run_info["failed"] = counts["failed"]
            run_info["cancelled"] = counts["cancelled"]
            run_info["artifact_count"] = mngr.summary.artifact_count

        self.runs[index] = run_info

        self.save()
        return run_info
