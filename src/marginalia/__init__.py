"""Grammar and style checking for the prose in source-code comments."""

from marginalia.exceptions import InvariantViolation, MarginaliaError
from marginalia.invariants import never

__all__ = ["__version__", "InvariantViolation", "MarginaliaError", "never"]

__version__ = "0.1.0"
