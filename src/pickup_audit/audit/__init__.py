"""Audit pipeline: batching dispatcher and sinks."""

from .dispatcher import BatchingDispatcher, SinkConfig
from .sinks import AuditSink, DatabaseSink, StdoutSink

__all__ = ["AuditSink", "BatchingDispatcher", "DatabaseSink", "SinkConfig", "StdoutSink"]
