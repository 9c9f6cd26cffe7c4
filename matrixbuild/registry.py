"""Contains the artifact registry, the single shared store that every job in a run
registers its produced artifacts with, along with the artifact naming and retention
handling."""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Union

from matrixbuild import hashing
from matrixbuild.matrix import ConfigurationError, JobSpec

DEFAULT_KINDS = ("text", "json", "md")
"""The artifact kinds accepted by a registry unless configured otherwise."""

KIND_EXTENSIONS = {"text": ".txt", "json": ".json", "md": ".md"}
"""File extensions used when archiving artifacts, anything else gets ``.bin``."""


class DuplicateArtifactError(Exception):
    """Raised when a different payload is registered for an already registered
    (job spec, kind), or when two different keys would produce the same name."""

    pass


class NotFoundError(KeyError):
    """Raised when looking up an artifact that was never registered or has expired."""

    pass


@dataclass(frozen=True)
class Artifact:
    """A named payload produced by a single job."""

    name: str
    """The canonical name, ``<prefix>-<label1>-...-<labelN>-<kind>``."""
    kind: str
    spec: JobSpec = field(repr=False)
    """The job spec that produced this artifact."""
    payload: bytes = field(repr=False)
    created: datetime = None
    """When the artifact was registered, retention is computed from this."""

    @property
    def size(self) -> int:
        return len(self.payload)

    def text(self, encoding: str = "utf-8") -> str:
        return self.payload.decode(encoding)


@dataclass
class RetentionPolicy:
    """How long artifacts stay accessible after they are registered."""

    duration: timedelta = timedelta(days=30)

    def __post_init__(self):
        if self.duration.total_seconds() < 0:
            raise ConfigurationError("Retention duration cannot be negative.")

    @classmethod
    def days(cls, days: float) -> "RetentionPolicy":
        return cls(timedelta(days=days))

    def expires_at(self, created: datetime) -> datetime:
        return created + self.duration

    def is_expired(self, created: datetime, now: datetime) -> bool:
        return now - created >= self.duration


class ArtifactRegistry:
    """Accepts, names, stores, and expires the artifacts for a single run.

    All mutation goes through ``register`` and ``sweep``, both of which hold the
    registry lock for the whole operation, so concurrent jobs can safely register
    at the same time.

    Args:
        prefix (str): The prefix every artifact name starts with, usually something
            like ``build-<commit>``.
        kinds (list[str]): The allowed artifact kinds.
        retention (RetentionPolicy): When registered artifacts expire.
        clock (Callable): A function returning the current ``datetime``, mostly useful
            for tests. Defaults to ``datetime.now``.

    Example:
        .. code-block:: python

            registry = ArtifactRegistry("build-a90bca4")
            artifact = registry.register(spec, "json", b'{"ok": true}')
            registry.get(artifact.name)
    """

    def __init__(
        self,
        prefix: str,
        kinds: list[str] = None,
        retention: RetentionPolicy = None,
        clock: Callable[[], datetime] = None,
    ):
        if not prefix:
            raise ValueError("An artifact registry requires a non-empty prefix.")
        self.prefix = prefix
        """The prefix for all artifact names in this registry."""
        self.kinds: tuple[str, ...] = tuple(kinds if kinds is not None else DEFAULT_KINDS)
        """The allowed artifact kinds."""
        self.retention = retention if retention is not None else RetentionPolicy()
        """The retention policy applied to every artifact."""
        self.clock = clock if clock is not None else datetime.now

        self._lock = threading.Lock()
        self._by_key: dict[tuple, Artifact] = {}
        self._by_name: dict[str, Artifact] = {}
        self._order: dict[str, int] = {}
        self._counter = 0
        self.closed = False
        """Set once ``close()`` has been called, no further registration is allowed."""

    def artifact_name(self, spec: JobSpec, kind: str) -> str:
        """Get the canonical name for the artifact of the given kind from the given job."""
        return "-".join([self.prefix, *spec.labels, kind]).lower()

    def register(self, spec: JobSpec, kind: str, payload: Union[bytes, str]) -> Artifact:
        """Store a payload for the given job spec and kind.

        Registering the exact same payload for the same (spec, kind) again simply returns
        the already registered artifact, so retried jobs can safely re-register.

        Raises:
            ValueError: If ``kind`` isn't one of the registry's kinds.
            DuplicateArtifactError: If a different payload was already registered for this
                (spec, kind), or another key already produced the same name.
        """
        if kind not in self.kinds:
            raise ValueError(
                f"Unknown artifact kind '{kind}', expected one of {list(self.kinds)}"
            )
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        payload = bytes(payload)
        name = self.artifact_name(spec, kind)
        key = (spec.key, kind)

        with self._lock:
            if self.closed:
                raise RuntimeError("Cannot register artifacts with a closed registry.")
            existing = self._by_key.get(key)
            if existing is not None:
                if existing.payload == payload:
                    logging.debug("Artifact '%s' already registered, skipping" % name)
                    return existing
                raise DuplicateArtifactError(
                    f"Artifact '{name}' is already registered with a different payload."
                )
            if name in self._by_name:
                raise DuplicateArtifactError(
                    f"Artifact name '{name}' is already used by job '{self._by_name[name].spec}'."
                )
            artifact = Artifact(name, kind, spec, payload, self.clock())
            self._by_key[key] = artifact
            self._by_name[name] = artifact
            self._order[name] = self._counter
            self._counter += 1

        logging.debug("Registered artifact '%s' (%s bytes)" % (name, artifact.size))
        return artifact

    def get(self, name: str, now: datetime = None) -> Artifact:
        """Get the artifact with the given name.

        Raises:
            NotFoundError: If no artifact has this name or it has expired.
        """
        if now is None:
            now = self.clock()
        with self._lock:
            artifact = self._by_name.get(name)
        if artifact is None or self.retention.is_expired(artifact.created, now):
            raise NotFoundError(name)
        return artifact

    def __contains__(self, name: str) -> bool:
        try:
            self.get(name)
        except NotFoundError:
            return False
        return True

    def sweep(self, now: datetime = None) -> list[str]:
        """Evict every artifact whose age is at least the retention duration.

        Returns:
            The names of the artifacts evicted by this call. Sweeping again with the same
            ``now`` returns an empty list.
        """
        if now is None:
            now = self.clock()
        evicted = []
        with self._lock:
            for name, artifact in list(self._by_name.items()):
                if self.retention.is_expired(artifact.created, now):
                    del self._by_name[name]
                    del self._by_key[(artifact.spec.key, artifact.kind)]
                    del self._order[name]
                    evicted.append(name)
        if len(evicted) > 0:
            logging.info("Swept %s expired artifacts" % len(evicted))
        return evicted

    def _live(self, now: datetime) -> list[Artifact]:
        with self._lock:
            artifacts = list(self._by_name.values())
            order = dict(self._order)
        artifacts = [
            artifact
            for artifact in artifacts
            if not self.retention.is_expired(artifact.created, now)
        ]
        artifacts.sort(key=lambda artifact: (artifact.created, order[artifact.name]))
        return artifacts

    def list_by_prefix(self, prefix: str = "", now: datetime = None) -> list[Artifact]:
        """Get all live artifacts whose name starts with ``prefix``, oldest first."""
        if now is None:
            now = self.clock()
        prefix = prefix.lower()
        return [
            artifact for artifact in self._live(now) if artifact.name.startswith(prefix)
        ]

    def artifacts_for(self, spec: JobSpec, now: datetime = None) -> list[Artifact]:
        """Get all live artifacts produced by the given job spec, oldest first."""
        if now is None:
            now = self.clock()
        return [artifact for artifact in self._live(now) if artifact.spec == spec]

    def archive(self, path: str) -> str:
        """Write every live artifact into the given directory, along with an
        ``artifacts.json`` manifest.

        Args:
            path (str): The directory to write into, created if it doesn't exist.

        Returns:
            The path to the manifest file.
        """
        os.makedirs(path, exist_ok=True)
        now = self.clock()
        manifest = []
        for artifact in self._live(now):
            filename = artifact.name + KIND_EXTENSIONS.get(artifact.kind, ".bin")
            with open(os.path.join(path, filename), "wb") as outfile:
                outfile.write(artifact.payload)
            manifest.append(
                {
                    "name": artifact.name,
                    "kind": artifact.kind,
                    "file": filename,
                    "job": artifact.spec.as_dict(),
                    "job_hash": artifact.spec.hash,
                    "md5": hashing.hash_payload(artifact.payload),
                    "size": artifact.size,
                    "created": artifact.created.isoformat(),
                    "expires": self.retention.expires_at(artifact.created).isoformat(),
                }
            )
        manifest_path = os.path.join(path, "artifacts.json")
        with open(manifest_path, "w") as outfile:
            json.dump(manifest, outfile, indent=4)
        logging.info("Archived %s artifacts to %s" % (len(manifest), path))
        return manifest_path

    def close(self):
        """Free all stored payloads and refuse any further registration."""
        with self._lock:
            self._by_key.clear()
            self._by_name.clear()
            self._order.clear()
            self.closed = True

    def __len__(self):
        return len(self._live(self.clock()))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
