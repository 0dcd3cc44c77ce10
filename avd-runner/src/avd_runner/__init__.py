"""avd-runner.

Runs an Android instrumentation test suite against a throwaway emulator and
retries across tooling failures, device crashes and test timeouts until it
reaches a pass/fail verdict or exhausts its retry budgets.
"""

__all__ = [
    "cli",
    "config",
    "exit_status",
    "logging_utils",
    "reporting",
    "runtime",
]
