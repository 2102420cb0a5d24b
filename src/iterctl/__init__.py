"""iterctl - iteration control for build-test-commit agent loops."""

__version__ = "0.3.0"
