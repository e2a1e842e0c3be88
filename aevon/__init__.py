"""Usage-event storage and checkpointed, time-bucketed pre-aggregation."""

__version__ = "0.1.0"