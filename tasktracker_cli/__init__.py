"""Command-line client for the task tracker API.

Commands are built with Typer; errors are printed with Rich on stderr and
``--json`` output stays machine-readable on stdout.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
