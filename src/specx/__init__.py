"""SpecX - task routing and workflow state synchronization engine."""

__version__ = "0.1.0"
