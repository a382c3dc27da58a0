"""
Verification engine for post-sync audits.

Reads the canonical store (and optionally the server snapshots and the sync
history) and produces a structured report of content that did not converge:
missing titles, incomplete records, episode numbering gaps, and per-server
failure attribution. Never writes to the store.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from reconciliation.detector import (
    CATEGORY,
    MediaIssue,
    MissingItem,
    ServerIssues,
    attribute_server_failures,
    find_episode_gaps,
    find_incomplete_records,
    find_missing_content,
    summarize_issues,
)
from shared.log import create_logger
from snapshot.models import KIND_ORDER, MediaKind, ServerSnapshot
from store.base import RecordStore
from sync.history import SyncHistoryEntry, SyncHistoryLog

_, log_debug, log_info, log_warn, log_error = create_logger("Verify")

# History entries averaged for timing analysis
TIMING_WINDOW = 10


def analyze_sync_timings(entries: list[SyncHistoryEntry]) -> dict[str, Any]:
    """Average per-kind processing seconds over recent runs, newest first in 'history'."""
    if not entries:
        return {}

    newest_first = list(reversed(entries))
    latest = newest_first[0]

    def average(values: list[float]) -> float:
        return sum(values) / len(values) if values else 0.0

    averages = {'totalTimeSeconds': average([e.duration for e in entries])}
    for kind in KIND_ORDER:
        name = CATEGORY[kind]
        seconds = [e.kinds[kind.value].seconds if kind.value in e.kinds else 0.0 for e in entries]
        averages[f'{name[:-1]}TimeSeconds'] = average(seconds)

    return {
        'latestSync': {
            'completedAt': latest.finished_at,
            'server': latest.server_id,
            'durationSeconds': latest.duration,
        },
        'averages': averages,
        'history': [
            {
                'completedAt': e.finished_at,
                'server': e.server_id,
                'completed': e.completed,
                'cancelled': e.cancelled,
                'processedCounts': {
                    CATEGORY[k]: e.kinds[k.value].processed if k.value in e.kinds else 0 for k in KIND_ORDER
                },
                'errorCounts': {
                    CATEGORY[k]: e.kinds[k.value].errors if k.value in e.kinds else 0 for k in KIND_ORDER
                },
            }
            for e in newest_first
        ],
    }


@dataclass
class VerificationReport:
    """Audit results.

    Attributes:
        issues: Per kind, records with findings
        totals: Per kind, number of canonical records checked
        missing_items: Per kind, advertised titles with no canonical record
        server_issues: Per server, attributed failure counts
        sync_timings: Timing analysis of recent sync runs
        errors: Non-fatal errors while building the report
    """
    issues: dict[MediaKind, list[MediaIssue]] = field(
        default_factory=lambda: {kind: [] for kind in KIND_ORDER}
    )
    totals: dict[MediaKind, int] = field(default_factory=lambda: {kind: 0 for kind in KIND_ORDER})
    missing_items: dict[MediaKind, list[MissingItem]] = field(
        default_factory=lambda: {kind: [] for kind in KIND_ORDER}
    )
    server_issues: dict[str, ServerIssues] = field(default_factory=dict)
    sync_timings: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    generated_at: float = field(default_factory=time.time)

    @property
    def total_issues(self) -> int:
        return sum(len(v) for v in self.issues.values())

    @property
    def total_media(self) -> int:
        return sum(self.totals.values())

    @property
    def issue_percentage(self) -> str:
        if self.total_media == 0:
            return '0%'
        return f'{self.total_issues / self.total_media * 100:.2f}%'

    @property
    def total_missing(self) -> int:
        return sum(len(v) for v in self.missing_items.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            'generatedAt': self.generated_at,
            'issues': {CATEGORY[k]: [i.to_dict() for i in v] for k, v in self.issues.items()},
            'stats': {
                CATEGORY[k]: {'total': self.totals[k], 'withIssues': len(self.issues[k])}
                for k in KIND_ORDER
            },
            'missingItems': {CATEGORY[k]: [m.to_dict() for m in v] for k, v in self.missing_items.items()},
            'serverIssues': {sid: s.to_dict() for sid, s in self.server_issues.items()},
            'syncTimings': self.sync_timings,
            'issueSummary': summarize_issues(self.issues),
            'totalIssues': self.total_issues,
            'totalMedia': self.total_media,
            'issuePercentage': self.issue_percentage,
            'errors': list(self.errors),
        }


class VerificationEngine:
    """Builds a VerificationReport from the canonical store.

    Args:
        store: Canonical RecordStore (read only)
        history: Optional SyncHistoryLog for timing analysis
    """

    def __init__(self, store: RecordStore, history: Optional[SyncHistoryLog] = None):
        self.store = store
        self.history = history

    def run(
        self,
        snapshots: Optional[Iterable[ServerSnapshot]] = None,
        server_ids: Optional[Iterable[str]] = None,
    ) -> VerificationReport:
        """
        Run every audit check.

        Args:
            snapshots: Server snapshots to compare against; without them the
                       missing-content and server attribution sections stay empty
            server_ids: Servers to report on even if nothing is attributed to them

        Execution steps:
            1. Load every canonical record, per kind
            2. Timing analysis from sync history
            3. Per-record completeness checks
            4. Episode gap detection, merged into season findings
            5. Missing content and server attribution (with snapshots only)
        """
        report = VerificationReport()

        # Step 1: Load records
        records: dict[MediaKind, list[dict[str, Any]]] = {}
        try:
            for kind in KIND_ORDER:
                records[kind] = list(self.store.iter_records(kind))
                report.totals[kind] = len(records[kind])
        except Exception as e:
            report.errors.append(f"Failed to read canonical records: {e}")
            log_error(f"Failed to read canonical records: {e}")
            return report
        log_info(
            "Verifying " + ", ".join(f"{report.totals[k]} {CATEGORY[k]}" for k in KIND_ORDER)
        )

        # Step 2: Timing analysis
        if self.history is not None:
            report.sync_timings = analyze_sync_timings(self.history.recent(TIMING_WINDOW))

        # Step 3: Completeness
        report.issues = find_incomplete_records(records)

        # Step 4: Episode gaps, attached to the season's findings
        season_issues = {i.key: i for i in report.issues[MediaKind.SEASON]}
        season_records = {
            (r.get('showTitle'), r.get('seasonNumber')) for r in records[MediaKind.SEASON]
        }
        for season_key, gaps in find_episode_gaps(records[MediaKind.EPISODE]).items():
            existing = season_issues.get(season_key)
            if existing is not None:
                existing.issues.extend(gaps)
            elif (season_key.title, season_key.season) in season_records:
                issue = MediaIssue(MediaKind.SEASON, season_key, list(gaps))
                report.issues[MediaKind.SEASON].append(issue)
                season_issues[season_key] = issue
            else:
                log_debug(f"Episode gaps in {season_key.label} but no season record; not reported")

        # Step 5: Compare with servers
        snapshots = list(snapshots or [])
        if snapshots:
            report.missing_items = find_missing_content(snapshots, records)
            ids = list(server_ids or []) or [s.server_id for s in snapshots]
            report.server_issues = attribute_server_failures(ids, records)

        log_info(
            f"Verification complete: {report.total_issues}/{report.total_media} records with issues "
            f"({report.issue_percentage}), {report.total_missing} missing titles"
        )
        return report
