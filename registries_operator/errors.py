"""
Error taxonomy for the registries operator.

Cluster API failures are not wrapped: they surface as
``kubernetes.client.ApiException`` and the helpers below classify them.
"""
from kubernetes.client import ApiException


class MissingCertificateError(Exception):
    """The Secret referenced by a Registry does not carry a ``ca.crt``."""


class InvalidAddressError(Exception):
    """The address of a Registry cannot be turned into a valid Job: retrying will not help."""


class LogicError(Exception):
    """
    A broken invariant in the operator itself.

    Must never happen in correct operation: callers must not retry it,
    the process is aborted instead.
    """


def _status(e: BaseException):
    return e.status if isinstance(e, ApiException) else None


def is_not_found(e: BaseException) -> bool:
    return _status(e) == 404


def is_already_exists(e: BaseException) -> bool:
    return _status(e) == 409


def is_gone(e: BaseException) -> bool:
    return _status(e) == 410
