"""Presentation-side plumbing: the event bus and console rendering."""

from .events import EventBus

__all__ = ["EventBus"]
