"""gradetags - tag, domain and ability taxonomy mined from grading feedback."""

__version__ = "0.1.0"
