"""Polling runtime for the coordination engine."""

from introflow.runtime.engine import CoordinationEngine, build_registries
from introflow.runtime.poller import Poller

__all__ = ["CoordinationEngine", "Poller", "build_registries"]
