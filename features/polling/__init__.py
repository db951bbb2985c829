"""
Polling feature — select a ready work item, lock it, start a pipeline run.

Public API:
    from features.polling import WorkItemPoller, rank_work_items
    from features.polling.handler import lambda_handler, run_poll
"""

from features.polling.models import PollResult, TriggerResult
from features.polling.poller import WorkItemPoller, rank_work_items, spec_path_for
from features.polling.source import GitHubProjectSource, GitHubSession
from features.polling.triggers import CodeBuildTrigger, TemporalTrigger

__all__ = [
    "CodeBuildTrigger",
    "GitHubProjectSource",
    "GitHubSession",
    "PollResult",
    "TemporalTrigger",
    "TriggerResult",
    "WorkItemPoller",
    "rank_work_items",
    "spec_path_for",
]
