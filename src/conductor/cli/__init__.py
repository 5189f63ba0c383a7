"""
CLI layer for conductor.

Provides a Typer application for inspecting workflow definitions:
argument parsing, coloured output, and table formatting only.

Entry point::

    conductor --help
"""

from conductor.cli.app import app

__all__ = ["app"]
