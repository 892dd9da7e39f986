"""Execution monitor: read-only projection over the execution log.

The monitor keeps no state of its own. Every call re-reads the log.

Modules
-------
projection
    ``ExecutionProjection`` reads the log and produces ``ExecutionView``
    models, a frozen point-in-time view of one execution.
renderer
    ``ExecutionRenderer`` turns views into Rich renderables for terminal
    display.
"""
