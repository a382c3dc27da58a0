"""Reconciliation package for post-sync verification audits."""
from reconciliation.detector import (
    MediaIssue,
    MissingItem,
    ServerIssues,
    attribute_server_failures,
    find_episode_gaps,
    find_incomplete_records,
    find_missing_content,
    summarize_issues,
)
from reconciliation.engine import VerificationEngine, VerificationReport, analyze_sync_timings

__all__ = [
    'MediaIssue',
    'MissingItem',
    'ServerIssues',
    'attribute_server_failures',
    'find_episode_gaps',
    'find_incomplete_records',
    'find_missing_content',
    'summarize_issues',
    'VerificationEngine',
    'VerificationReport',
    'analyze_sync_timings',
]
