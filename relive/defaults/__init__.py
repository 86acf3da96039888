"""Relive Defaults - recovers default values of newly added fields."""

from relive.defaults.recoverer import DefaultValueRecoverer

__all__ = ["DefaultValueRecoverer"]
