# flake8: noqa

# make all submodules directly accessible from a single matrixbuild import
from matrixbuild import (
    executor,
    hashing,
    manager,
    matrix,
    registry,
    reporting,
    store,
    utils,
    workflow,
)

# make super important things accessible directly off of the top level module
from matrixbuild.executor import (
    JobCancelled,
    JobContext,
    JobExecutor,
    JobFailure,
    JobResult,
    JobStatus,
    JobTimeoutError,
    current_context,
)
from matrixbuild.manager import RunManager
from matrixbuild.matrix import Axis, ConfigurationError, JobSpec, expand_matrix
from matrixbuild.registry import (
    Artifact,
    ArtifactRegistry,
    DuplicateArtifactError,
    NotFoundError,
    RetentionPolicy,
)
from matrixbuild.reporting import RunSummary
from matrixbuild.workflow import run_workflow

__version__ = "0.1.0"
