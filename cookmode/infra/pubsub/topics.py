"""
Topic names for the pub/sub bus.

A topic is derived from an entity id and an event class; the names are part
of the external contract and must stay stable across releases.
"""

from typing import Any


class Topics:
    @staticmethod
    def job_progress(job_id: Any) -> str:
        return f"job:{job_id}:progress"

    @staticmethod
    def job_events(job_id: Any) -> str:
        return f"job:{job_id}:events"

    @staticmethod
    def voice_usage(user_id: Any) -> str:
        return f"voice:{user_id}:usage"

    @staticmethod
    def subscription(user_id: Any) -> str:
        return f"subscription:{user_id}:events"


class Patterns:
    JOB_PROGRESS = "job:*:progress"
    JOB_EVENTS = "job:*:events"
    VOICE_USAGE = "voice:*:usage"
    SUBSCRIPTION = "subscription:*:events"


def entity_id(topic: str) -> str:
    """The entity id embedded in a topic name ("job:42:events" -> "42")."""
    parts = topic.split(":")
    if len(parts) != 3:
        raise ValueError(f"Not a topic name: {topic}")
    return parts[1]
