"""Utility functions for generating hashes for job specifications and payloads.

The hash of a job spec is what results and artifacts are correlated on, and is
included in the run summary and the archived artifact manifest. The basic idea
is the same for both: get a consistent string representation, compute the md5
of it, and use the hex digest.

The representation of a job spec is the JSON list of its ``[axis, label]``
pairs in axis order, so two specs assigning the same labels to the same axes
always hash the same regardless of where in a matrix they came from.
"""

import hashlib
import json


def get_job_spec_hash_values(job_spec) -> list[list[str]]:
    """Get the list representation of the spec's assignments that gets hashed."""
    return [[str(name), str(label)] for name, label in job_spec.assignments]


def hash_job_spec(job_spec, dry: bool = False):
    """Compute the md5 hash of the passed job spec's assignments.

    Args:
        job_spec (JobSpec): The job spec to hash.
        dry (bool): If ``True``, return the representation that would be hashed
            instead of the hash itself, for debugging.

    Returns:
        The hex digest string, or the representation if ``dry``.
    """
    representation = json.dumps(get_job_spec_hash_values(job_spec))
    if dry:
        return representation
    return hashlib.md5(representation.encode()).hexdigest()


def hash_payload(payload: bytes) -> str:
    """Returns the md5 hex digest of an artifact payload, stored in manifests so archived
    payloads can be verified."""
    return hashlib.md5(payload).hexdigest()
