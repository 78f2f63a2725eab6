from __future__ import annotations


class UsageFetchError(RuntimeError):
    code = "fetch_failed"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)


class MissingExecutable(UsageFetchError):
    code = "missing_executable"


class SubprocessLaunchFailed(UsageFetchError):
    code = "subprocess_launch_failed"


class SubprocessTimedOut(UsageFetchError):
    code = "subprocess_timed_out"


class MalformedOutput(UsageFetchError):
    code = "malformed_output"


class NetworkFailure(UsageFetchError):
    code = "network_failure"


class LoginRequired(UsageFetchError):
    code = "login_required"


class AccountMismatch(UsageFetchError):
    code = "account_mismatch"


class NoDashboardData(UsageFetchError):
    code = "no_dashboard_data"


class DataNotYetAvailable(UsageFetchError):
    """Provider-specific "not ready yet" signal; never shown as an alarm."""

    code = "data_not_yet_available"


class FetchTimeout(UsageFetchError):
    code = "timeout"
