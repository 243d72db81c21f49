"""Pydantic schemas."""

from .job import RegenerationJob, JOB_KIND
from .webhook import PushEvent, WebhookResponse

__all__ = ["RegenerationJob", "JOB_KIND", "PushEvent", "WebhookResponse"]
