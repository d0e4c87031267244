"""Work Harness - runs coding agents through a dependency-ordered work spec."""

__version__ = "0.1.0"
