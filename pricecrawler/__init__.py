"""Crawler framework for batch price ingestion."""

from .crawler import Crawler, IterationMode, SourceDefinition
from .jobs import Consumer, JobQueue, Producer
from .pusher import Pusher

__all__ = ["Consumer", "Crawler", "IterationMode", "JobQueue", "Producer", "Pusher", "SourceDefinition"]
