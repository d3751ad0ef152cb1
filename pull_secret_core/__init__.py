"""Registry pull-credential lifecycle engine."""

__version__ = "0.1.0"
