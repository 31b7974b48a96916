"""
Error types raised by the calculation engine.

Absence of evidence is never an error: calculators return their negative
default instead. Only a malformed run set-up or a failing store raises.
"""


class HivCohortError(RuntimeError):
    """Base class for errors raised by hivcohort."""


class ConfigurationError(HivCohortError):
    """Raised for a missing ambient parameter, an unmapped sub-cohort parameter or an unknown cohort name."""


class DataAccessError(HivCohortError):
    """Raised when the observation store cannot be read. Never retried here."""
