"""Actuator: run reactions when Alertmanager alerts match configured labels."""

__version__ = "1.0.0"
