"""Android emulator runtime.

Thin wrappers around avdmanager/emulator/adb (``controller``) and the
:class:`EmulatorRunner` that implements the orchestrator's device contract on
top of them.
"""
