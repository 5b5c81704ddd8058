"""
Pipeline Services

Event-driven trigger, post-merge queue and the scheduled recovery runner.
"""

from .post_processing import PostMergeQueue
from .trigger import DualCompletionTrigger
from .scheduled_runner import ScheduledRunner, scheduled_runner, get_scheduled_runner

__all__ = [
    'PostMergeQueue',
    'DualCompletionTrigger',
    'ScheduledRunner',
    'scheduled_runner',
    'get_scheduled_runner',
]
