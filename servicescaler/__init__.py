"""Step-scaling autoscaler and health-driven discovery registry for a replicated service."""

__version__ = "0.1.0"
