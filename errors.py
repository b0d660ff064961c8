"""
Failures that turn into a denied eviction.
"""

import json
from kubernetes.client.rest import ApiException


class AdmissionError(Exception):
    """Base class for failures that must turn into a denied eviction."""


class InconsistentStateError(AdmissionError):
    """A virt-launcher pod references a VMI that cannot be read."""


class MutationFailedError(AdmissionError):
    """The VMI could not be marked for evacuation."""


class ClusterConfigError(AdmissionError):
    """The cluster-wide eviction strategy could not be read."""


def describe_error(error: BaseException) -> str:
    """Short human-readable form of an error, using the API server message when there is one."""
    if isinstance(error, AdmissionError) and error.__cause__ is not None:
        return describe_error(error.__cause__)
    if isinstance(error, ApiException):
        message = error.reason
        if error.body:
            try:
                message = json.loads(error.body).get("message", message)
            except (ValueError, AttributeError):
                pass
        return f"{message} ({error.status})"
    return str(error)
