"""Engine error taxonomy.

Probe and delivery failures are values, not exceptions; these cover the
conditions the engine itself has to surface.
"""


class PulseGuardError(Exception):
    """Base class for engine errors."""


class ConfigurationError(PulseGuardError):
    """Operator-supplied configuration cannot be used as written.
    
    Raised for malformed content-match patterns, invalid channel configs and
    unknown service types. The offending row stays enabled.
    """


class PersistenceError(PulseGuardError):
    """Storage rejected a check's writes after retries."""


class EngineStartupError(PulseGuardError):
    """The engine cannot start, e.g. storage is unreachable."""
