"""Contains the axis and job specification classes, and the matrix expansion
function that turns a set of axes into the full list of jobs to run."""

import itertools
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Union

from matrixbuild import hashing


class ConfigurationError(ValueError):
    """Raised for invalid matrix or executor configuration, before any job runs."""

    pass


@dataclass(frozen=True)
class Axis:
    """A single named dimension of a build matrix.

    Example:
        .. code-block:: python

            from matrixbuild import Axis

            os_axis = Axis("os", ["ubuntu", "windows", "macos"])
    """

    name: str
    """The axis name, e.g. ``os`` or ``version``. Must be unique within a matrix."""
    labels: tuple[str, ...] = ()
    """The ordered labels for this axis. Order determines expansion order."""

    def __post_init__(self):
        # allow lists to be passed in while keeping the dataclass hashable
        object.__setattr__(self, "labels", tuple(str(label) for label in self.labels))

    def validate(self):
        """Raise a ``ConfigurationError`` if this axis has no labels or repeated labels.

        Labels are compared case-insensitively since artifact names are lowercased.
        """
        if not self.name:
            raise ConfigurationError("Matrix axes must be named.")
        if len(self.labels) == 0:
            raise ConfigurationError(f"Axis '{self.name}' has no labels.")
        seen = {}
        for label in self.labels:
            if label.lower() in seen:
                raise ConfigurationError(
                    f"Axis '{self.name}' contains the label '{label}' more than once "
                    f"(as '{seen[label.lower()]}')."
                )
            seen[label.lower()] = label

    def __len__(self):
        return len(self.labels)


@dataclass(frozen=True)
class JobSpec:
    """A single point in the matrix, assigning exactly one label to every axis.

    JobSpecs are created by ``expand_matrix`` and should be treated as immutable
    identities, they are used as the correlation key between submitted jobs, their
    results, and their artifacts.
    """

    assignments: tuple[tuple[str, str], ...]
    """The ``(axis name, label)`` pairs, in axis order."""
    index: int = field(default=0, compare=False)
    """The position of this spec in the expanded matrix."""

    @property
    def labels(self) -> tuple[str, ...]:
        """The assigned labels in axis order."""
        return tuple(label for _, label in self.assignments)

    @property
    def axes(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.assignments)

    @property
    def key(self) -> tuple[tuple[str, str], ...]:
        return self.assignments

    @property
    def hash(self) -> str:
        """Deterministic hex digest of the assignments, see ``hashing.hash_job_spec``."""
        return hashing.hash_job_spec(self)

    @property
    def name(self) -> str:
        """Human readable name, e.g. ``ubuntu-16.x``."""
        return "-".join(self.labels)

    def as_dict(self) -> dict[str, str]:
        return dict(self.assignments)

    def __getitem__(self, axis_name: str) -> str:
        for name, label in self.assignments:
            if name == axis_name:
                return label
        raise KeyError(axis_name)

    def __str__(self):
        return ", ".join(f"{name}={label}" for name, label in self.assignments)


AxesDefinition = Union[
    Iterable[Axis], Iterable[tuple[str, Iterable[str]]], Mapping[str, Iterable[str]]
]


def normalize_axes(axes: AxesDefinition) -> list[Axis]:
    """Convert any accepted axes definition into a validated list of ``Axis`` instances.

    Args:
        axes: Either a list of ``Axis`` instances, a list of ``(name, labels)`` pairs,
            or a mapping of axis name to labels (insertion order is used as axis order.)

    Raises:
        ConfigurationError: If there are no axes, any axis is empty or has repeated
            labels, or two axes share a name.
    """
    if axes is None:
        raise ConfigurationError("No matrix axes were provided.")
    if isinstance(axes, Mapping):
        axes = list(axes.items())

    normalized = []
    for axis in axes:
        if not isinstance(axis, Axis):
            name, labels = axis
            if isinstance(labels, str):
                labels = [labels]
            axis = Axis(name, tuple(labels))
        normalized.append(axis)

    if len(normalized) == 0:
        raise ConfigurationError("A matrix requires at least one axis.")

    names = set()
    for axis in normalized:
        axis.validate()
        if axis.name in names:
            raise ConfigurationError(f"Axis name '{axis.name}' is used more than once.")
        names.add(axis.name)
    return normalized


def expand_matrix(axes: AxesDefinition) -> list[JobSpec]:
    """Compute the full cartesian product of the passed axes.

    The returned list is ordered lexicographically over axis order, then label order
    within each axis, so expanding the same axes always produces the same list.

    Example:
        .. code-block:: python

            specs = expand_matrix([("os", ["ubuntu", "macos"]), ("version", ["18.x", "20.x"])])
            # ubuntu-18.x, ubuntu-20.x, macos-18.x, macos-20.x

    Raises:
        ConfigurationError: If the axes are invalid (see ``normalize_axes``), or two jobs
            would get the same artifact names, e.g. labels ``a``/``a-b`` crossed with
            ``b-c``/``c``.

    Returns:
        A list of ``JobSpec``, of length equal to the product of all axis lengths.
    """
    normalized = normalize_axes(axes)
    specs = []
    names = {}
    for index, labels in enumerate(
        itertools.product(*[axis.labels for axis in normalized])
    ):
        assignments = tuple(
            (axis.name, label) for axis, label in zip(normalized, labels)
        )
        spec = JobSpec(assignments, index=index)
        # artifact names are built from the hyphen-joined, lowercased labels
        name = spec.name.lower()
        if name in names:
            raise ConfigurationError(
                f"Jobs '{names[name]}' and '{spec}' would produce the same artifact names."
            )
        names[name] = spec
        specs.append(spec)
    return specs


def matrix_size(axes: AxesDefinition) -> int:
    """The number of jobs the passed axes would expand into."""
    size = 1
    for axis in normalize_axes(axes):
        size *= len(axis)
    return size
