"""Deployline: staged build-and-deploy pipelines with health-gated rollouts.

A pipeline is an ordered list of stages; each stage runs its actions
concurrently and hands artifacts to later stages through a
content-addressed artifact store. Executions of one pipeline are
serialized, persisted to a hash-chained execution log, and end in a
rolling update of a running service that never drops below its
minimum healthy capacity.
"""

__version__ = "0.1.0"

from deployline.core.engine import PipelineEngine
from deployline.core.rollout import RolloutController
from deployline.monitor.projection import ExecutionProjection
from deployline.cli.app import app as cli

__all__ = ["PipelineEngine", "RolloutController", "ExecutionProjection", "cli", "__version__"]
