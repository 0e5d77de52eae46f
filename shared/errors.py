# shared/errors.py

"""Errors surfaced to callers of the queue and send operations.

Each class carries the HTTP status the web layer answers with. The
dispatcher never raises these to anyone: on the scheduled path a failure
only leaves the message pending.
"""


class SchedulerError(Exception):
    """Base class for errors reported back to the caller."""

    status_code = 500


class ValidationError(SchedulerError):
    """A required field is missing or malformed."""

    status_code = 400


class NotFoundError(SchedulerError):
    """No pending message with the given id."""

    status_code = 404


class CredentialMissingError(SchedulerError):
    """No Slack credential has been stored yet."""

    status_code = 400


class AuthExpiredError(SchedulerError):
    """The access token was rejected and could not be refreshed."""

    status_code = 401


class RemoteRejectedError(SchedulerError):
    """Slack answered with an application-level error (e.g. channel_not_found)."""

    status_code = 400


class TransportFailureError(SchedulerError):
    """The call to Slack failed (network, timeout, unexpected status)."""

    status_code = 502


class StorageError(SchedulerError):
    """The queue or credential store could not be read or written."""

    status_code = 500


class OAuthExchangeError(SchedulerError):
    """The authorization code could not be exchanged for tokens."""

    status_code = 400

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code
