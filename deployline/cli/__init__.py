"""Deployline CLI: Typer-based command-line interface.

Provides the ``deployline`` command with subcommands for running the demo
delivery pipeline, running pipelines from definition files, and reading
execution history back from the execution log.

All output uses Rich for formatted terminal display.
"""
