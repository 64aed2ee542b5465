from __future__ import annotations


class KubebootError(RuntimeError):
    code = "error"


class UsageError(KubebootError):
    """Bad stage name, missing argument or missing input. Nothing was touched."""

    code = "usage_error"

    def __init__(self, message: str, *, usage: list[str] | None = None):
        super().__init__(message)
        self.usage = usage or []


class TransientError(KubebootError):
    """The target is not reachable yet; the poller retries these."""

    code = "transient"


class ActionFailure(KubebootError):
    code = "action_failed"


class CredentialConflict(KubebootError):
    code = "credential_conflict"

    def __init__(self, name: str, destination: object):
        super().__init__(
            f"{destination} already holds a different {name}; "
            "re-run with --rotate to replace it"
        )
        self.name = name
        self.destination = destination
