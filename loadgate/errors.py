"""
Exception hierarchy for the load-test engine.

Only two classes of error ever escape the engine: configuration
problems (raised synchronously, before any virtual user starts) and
internal faults that make a partial result unsafe.  Per-call and
per-check failures are *values* recorded as samples, never exceptions.
"""

from __future__ import annotations


class LoadGateError(Exception):
    """Base class for every error raised by :mod:`loadgate`."""


class ConfigurationError(LoadGateError):
    """A stage profile, threshold or test definition is malformed."""


class AggregatorError(LoadGateError):
    """The metric store detected a broken internal invariant."""


class VUInterrupted(LoadGateError):
    """
    Raised inside an iteration when its virtual user has been stopped.

    Iteration code does not need to handle it: the worker loop catches it
    at the iteration boundary and exits cleanly.
    """


class ScannerError(LoadGateError):
    """The external security scanner failed or produced an unreadable report."""
