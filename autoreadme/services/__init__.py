"""Business logic services."""

from .event_filter import EventFilter
from .job_queue import JobQueue
from .pipeline import PipelineOrchestrator

__all__ = ["EventFilter", "JobQueue", "PipelineOrchestrator"]
