"""hostguard - local-first host security analysis."""

__version__ = "1.0.0"
