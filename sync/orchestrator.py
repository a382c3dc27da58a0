"""
Sync orchestrator.

Runs one server's snapshot through Bootstrap -> FieldSync -> Aggregate.
Titles are processed parents first (movies, shows, seasons, episodes);
titles of one kind run concurrently on a bounded thread pool.

Failures are contained at the smallest unit: one field group of one title.
Only a run that can't start at all (no snapshot, server missing from the
availability index) ends early, with a single top-level error. Nothing is
rolled back: every applied patch stays applied.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from fetch.client import FetchClient
from shared.log import create_logger
from snapshot.models import KIND_ORDER, MediaKind, ServerSnapshot, TitleKey, TitleOffer
from store.base import RecordStore, apply_patch
from sync.availability import FieldAvailabilityIndex
from sync.bootstrap import BootstrapResult, TitleBootstrapper
from sync.errors import ResolutionError, RunAbortedError
from sync.history import KindStats, SyncHistoryEntry, SyncHistoryLog
from sync.synchronizers import FieldSynchronizer, SyncContext, default_synchronizers
from validation.config import FlatSyncConfig, ServerDescriptor

log_trace, log_debug, log_info, log_warn, log_error = create_logger("Orchestrator")


class RunState(str, Enum):
    PENDING = 'pending'
    BOOTSTRAP = 'bootstrap'
    FIELD_SYNC = 'field_sync'
    AGGREGATE = 'aggregate'
    COMPLETED = 'completed'
    ABORTED = 'aborted'


@dataclass
class TitleSyncResult:
    """Per-title outcome.

    Attributes:
        kind: Media kind of the title
        key: Record identity
        updated: Field group names written for this title
        created: True if the bootstrapper created the record in this run
        errors: One message per failed field group
    """
    kind: MediaKind
    key: TitleKey
    updated: list[str] = field(default_factory=list)
    created: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass
class SyncRunResult:
    """Outcome of one server's run.

    errors collects the top-level error (if the run aborted) followed by
    every title-level error, prefixed with the title label.
    """
    server_id: str
    state: RunState = RunState.PENDING
    titles: list[TitleSyncResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False
    bootstrap: Optional[BootstrapResult] = None
    kind_stats: dict[str, KindStats] = field(default_factory=dict)
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def completed(self) -> bool:
        return self.state is RunState.COMPLETED

    @property
    def updated_titles(self) -> list[TitleSyncResult]:
        return [t for t in self.titles if t.updated]

    @property
    def field_updates(self) -> int:
        return sum(len(t.updated) for t in self.titles)

    def to_history_entry(self) -> SyncHistoryEntry:
        return SyncHistoryEntry(
            server_id=self.server_id,
            started_at=self.started_at,
            finished_at=self.finished_at,
            completed=self.completed,
            cancelled=self.cancelled,
            kinds=dict(self.kind_stats),
            errors=list(self.errors),
        )


class SyncOrchestrator:
    """
    Drives bootstrap and field synchronization for server snapshots.

    Args:
        store: Canonical RecordStore
        fetcher: FetchClient used by synchronizers that download payloads
        config: FlatSyncConfig supplying worker count, timeouts and caption policy
        synchronizers: Field synchronizers to run (default: every field group)
        history: Optional SyncHistoryLog each finished run is appended to
    """

    def __init__(
        self,
        store: RecordStore,
        fetcher: FetchClient,
        config: Optional[FlatSyncConfig] = None,
        synchronizers: Optional[list[FieldSynchronizer]] = None,
        history: Optional[SyncHistoryLog] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.config = config
        self.synchronizers = synchronizers if synchronizers is not None else default_synchronizers()
        self.history = history
        self.bootstrapper = TitleBootstrapper(store)
        self.max_workers = config.max_workers if config is not None else 4

    def _context(self, server: ServerDescriptor, index: FieldAvailabilityIndex) -> SyncContext:
        ctx = SyncContext(server=server, index=index, store=self.store, fetcher=self.fetcher)
        if self.config is not None:
            ctx.metadata_timeout = self.config.metadata_timeout
            ctx.primary_caption_language = self.config.primary_caption_language
            ctx.primary_caption_code = self.config.primary_caption_code
            ctx.caption_order = self.config.caption_order
        return ctx

    def run(
        self,
        server: ServerDescriptor,
        snapshot: Optional[ServerSnapshot],
        index: FieldAvailabilityIndex,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncRunResult:
        """
        Run one server's snapshot against the canonical store.

        Args:
            server: Server whose snapshot is being applied
            snapshot: That server's normalized inventory
            index: Availability index built for this invocation (read-only)
            cancel_event: Set to stop between titles; applied patches remain

        Returns:
            SyncRunResult; never raises for title-level failures
        """
        result = SyncRunResult(server_id=server.id, started_at=time.time())

        try:
            self._check_preconditions(server, snapshot, index)
        except RunAbortedError as e:
            result.state = RunState.ABORTED
            result.errors.append(str(e))
            result.finished_at = time.time()
            log_error(f"Sync run for {server.id} aborted: {e}")
            self._record(result)
            return result

        log_info(f"Starting sync run for {server.id} ({len(snapshot)} titles)")

        # Step 1: Bootstrap placeholders
        result.state = RunState.BOOTSTRAP
        result.bootstrap = self.bootstrapper.run(snapshot, cancel_event)
        result.errors.extend(result.bootstrap.errors)
        created = {
            (kind, key)
            for kind, keys in result.bootstrap.created.items()
            for key in keys
        }

        # Step 2: Field sync, parents first
        result.state = RunState.FIELD_SYNC
        ctx = self._context(server, index)
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"sync-{server.id}") as pool:
            for kind in KIND_ORDER:
                offers = snapshot.offers(kind)
                if not offers:
                    continue
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    break

                kind_started = time.monotonic()
                futures = [
                    pool.submit(self._sync_title, ctx, offer, (kind, offer.key) in created, cancel_event)
                    for offer in offers
                ]
                stats = KindStats()
                for future in futures:
                    title_result = future.result()
                    if title_result is None:
                        result.cancelled = True
                        continue
                    result.titles.append(title_result)
                    stats.processed += 1
                    stats.updated += 1 if title_result.updated else 0
                    stats.created += 1 if title_result.created else 0
                    stats.errors += len(title_result.errors)
                stats.seconds = time.monotonic() - kind_started
                result.kind_stats[kind.value] = stats

                log_debug(
                    f"{server.id} {kind.value}: {stats.processed} processed, "
                    f"{stats.updated} updated, {stats.errors} errors in {stats.seconds:.2f}s"
                )

        # Step 3: Aggregate
        result.state = RunState.AGGREGATE
        for title in result.titles:
            result.errors.extend(f"{title.key.label}: {err}" for err in title.errors)

        result.state = RunState.COMPLETED
        result.finished_at = time.time()
        log_info(
            f"Sync run for {server.id} completed"
            + (" (cancelled)" if result.cancelled else "")
            + f": {len(result.titles)} titles, {result.field_updates} field updates, "
            f"{len(result.errors)} errors in {result.finished_at - result.started_at:.1f}s"
        )
        self._record(result)
        return result

    def run_all(
        self,
        snapshots: Iterable[ServerSnapshot],
        servers: Optional[list[ServerDescriptor]] = None,
        concurrent: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[SyncRunResult]:
        """
        Build one availability index from every snapshot, then run each server.

        Sequential runs go in precedence order. Concurrent runs share the
        same index and rely on per-field patches to interleave safely.

        Raises:
            ValueError: Without servers or config, or when two servers with
                snapshots share a priority
        """
        snapshots = list(snapshots)
        if servers is None:
            if self.config is None:
                raise ValueError("run_all needs servers or a config")
            servers = self.config.active_servers
        servers = sorted(servers, key=lambda s: s.priority)

        index = FieldAvailabilityIndex.build(snapshots, servers)
        by_id = {s.server_id: s for s in snapshots}

        if not concurrent:
            results = []
            for server in servers:
                if cancel_event is not None and cancel_event.is_set():
                    log_info("Sync cancelled before remaining servers ran")
                    break
                results.append(self.run(server, by_id.get(server.id), index, cancel_event))
            return results

        with ThreadPoolExecutor(max_workers=max(1, len(servers)), thread_name_prefix="server") as pool:
            futures = [pool.submit(self.run, s, by_id.get(s.id), index, cancel_event) for s in servers]
            return [f.result() for f in futures]

    def _check_preconditions(
        self,
        server: ServerDescriptor,
        snapshot: Optional[ServerSnapshot],
        index: Optional[FieldAvailabilityIndex],
    ) -> None:
        if snapshot is None:
            raise RunAbortedError(f"No snapshot available for server {server.id}")
        if snapshot.server_id != server.id:
            raise RunAbortedError(
                f"Snapshot belongs to {snapshot.server_id}, not {server.id}"
            )
        if index is None or not index.has_server(server.id):
            raise RunAbortedError(f"Server {server.id} is not part of the availability index")

    def _sync_title(
        self,
        ctx: SyncContext,
        offer: TitleOffer,
        created: bool,
        cancel_event: Optional[threading.Event],
    ) -> Optional[TitleSyncResult]:
        if cancel_event is not None and cancel_event.is_set():
            return None

        result = TitleSyncResult(kind=offer.kind, key=offer.key, created=created)

        try:
            record = self.store.find_by_key(offer.kind, offer.key)
        except Exception as e:
            result.errors.append(f"lookup failed: {e}")
            log_error(f"Lookup of {offer.key.label} failed: {e}")
            return result

        if record is None:
            err = ResolutionError(f"{offer.kind.value} {offer.key.label} was not bootstrapped")
            result.errors.append(str(err))
            log_warn(f"Skipping {offer.key.label}: {err}")
            return result

        for synchronizer in self.synchronizers:
            try:
                patch = synchronizer.sync(ctx, offer, record)
            except Exception as e:
                result.errors.append(f"{synchronizer.name}: {e}")
                log_error(f"{synchronizer.name} sync failed for {offer.key.label} on {ctx.server.id}: {e}")
                continue
            if patch:
                result.updated.append(synchronizer.name)
                apply_patch(record, patch)

        return result

    def _record(self, result: SyncRunResult) -> None:
        if self.history is not None:
            self.history.append(result.to_history_entry())
