"""Application service helpers."""

from .telemetry import HttpEventSink, LoggingEventSink
from .ui_hub import UiEventHub

__all__ = ["HttpEventSink", "LoggingEventSink", "UiEventHub"]
