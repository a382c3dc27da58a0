"""
Tests for sync/orchestrator.py - end-to-end runs over the alpha/beta
fixtures with an in-memory store and the mock fetcher.

Covers the behavioral guarantees of a sync:
- idempotence (unchanged inputs, zero writes)
- higher-precedence servers keep their fields in any run order
- per-field independence
- operator locks
- bootstrap-then-sync of unknown titles
- deterministic caption merge, including concurrent server runs
- abort, failure containment and cancellation
"""

import threading
from unittest.mock import MagicMock

import pytest

from snapshot.models import MediaKind, TitleKey

HEAT = TitleKey("Heat")


@pytest.fixture
def orchestrator(memory_store, mock_fetcher, config):
    from sync.orchestrator import SyncOrchestrator
    return SyncOrchestrator(memory_store, mock_fetcher, config)


def heat(store):
    return store.find_by_key(MediaKind.MOVIE, HEAT)


# =============================================================================
# Convergence
# =============================================================================

class TestConvergence:
    """Tests for the merged end state."""

    def test_run_all_completes_every_server(self, orchestrator, snapshots):
        results = orchestrator.run_all(snapshots)

        assert [r.server_id for r in results] == ["alpha", "beta"]
        assert all(r.completed for r in results)
        assert all(r.errors == [] for r in results)

    def test_rerun_with_unchanged_inputs_writes_nothing(self, orchestrator, snapshots, memory_store):
        orchestrator.run_all(snapshots)
        writes, inserts = memory_store.write_count, memory_store.insert_count

        results = orchestrator.run_all(snapshots)

        assert memory_store.write_count == writes
        assert memory_store.insert_count == inserts
        assert all(r.field_updates == 0 for r in results)

    @pytest.mark.parametrize("order", [("alpha", "beta"), ("beta", "alpha")])
    def test_higher_precedence_wins_in_any_order(self, orchestrator, servers, snapshots, index, memory_store, order):
        by_id = {s.id: s for s in servers}
        snaps = {s.server_id: s for s in snapshots}

        for server_id in order:
            orchestrator.run(by_id[server_id], snaps[server_id], index)

        record = heat(memory_store)
        assert record["videoURL"] == "http://alpha.test/movies/Heat/Heat.mp4"
        assert record["videoSource"] == "alpha"

    def test_higher_precedence_server_reclaims_field_when_it_appears(
        self, orchestrator, servers, alpha_snapshot, beta_snapshot, alpha_server, beta_server, memory_store
    ):
        """beta fills the field while alone; alpha takes it over once it advertises it."""
        from sync.availability import FieldAvailabilityIndex

        beta_only = FieldAvailabilityIndex.build([beta_snapshot], servers)
        orchestrator.run(beta_server, beta_snapshot, beta_only)
        assert heat(memory_store)["videoSource"] == "beta"

        both = FieldAvailabilityIndex.build([alpha_snapshot, beta_snapshot], servers)
        orchestrator.run(alpha_server, alpha_snapshot, both)
        orchestrator.run(beta_server, beta_snapshot, both)

        record = heat(memory_store)
        assert record["videoURL"] == "http://alpha.test/movies/Heat/Heat.mp4"
        assert record["videoSource"] == "alpha"

    def test_fields_sourced_independently(self, orchestrator, snapshots, memory_store):
        orchestrator.run_all(snapshots)

        record = heat(memory_store)
        assert record["videoSource"] == "alpha"
        assert record["posterSource"] == "alpha"
        assert record["backdropURL"] == "http://beta.test/media/Heat/backdrop.jpg"
        assert record["backdropSource"] == "beta"
        assert record["videoInfoSource"]["dimensions"] == "alpha"
        assert record["videoInfoSource"]["hdr"] == "beta"

    def test_locked_field_never_written(self, orchestrator, snapshots, memory_store):
        memory_store.seed(MediaKind.MOVIE, {
            "originalTitle": "Heat",
            "title": "Heat",
            "videoURL": "http://manual.test/heat.mp4",
            "lockedFields": ["videoURL"],
        })

        orchestrator.run_all(snapshots)

        record = heat(memory_store)
        assert record["videoURL"] == "http://manual.test/heat.mp4"
        assert "videoSource" not in record
        assert record["posterSource"] == "alpha"

    def test_unknown_title_bootstrapped_then_synced(self, orchestrator, snapshots, memory_store):
        results = orchestrator.run_all(snapshots)

        ronin = memory_store.find_by_key(MediaKind.MOVIE, TitleKey("Ronin"))
        assert ronin["initialDiscoveryServer"] == "beta"
        assert ronin["videoURL"] == "http://beta.test/media/Ronin.mp4"
        assert ronin["posterSource"] == "beta"

        beta_titles = {t.key: t for t in results[1].titles}
        assert beta_titles[TitleKey("Ronin")].created is True
        assert beta_titles[HEAT].created is False

    def test_episodes_and_derived_season_metadata(self, orchestrator, snapshots, memory_store):
        orchestrator.run_all(snapshots)

        season = memory_store.find_by_key(MediaKind.SEASON, TitleKey("Dark", 1))
        assert season["title"] == "Season One"
        assert season["posterURL"] == "http://alpha.test/tv/Dark/Season 1/poster.jpg"

        episode = memory_store.find_by_key(MediaKind.EPISODE, TitleKey("Dark", 1, 1))
        assert episode["videoSource"] == "alpha"
        assert episode["duration"] == 3060000


class TestCaptionMerge:
    """Tests for the merged caption map."""

    @pytest.mark.parametrize("concurrent", [False, True])
    def test_primary_language_first_with_its_source(self, orchestrator, snapshots, memory_store, concurrent):
        orchestrator.run_all(snapshots, concurrent=concurrent)

        record = heat(memory_store)
        assert list(record["captionURLs"]) == ["English", "French"]
        assert record["captionURLs"]["English"]["sourceServerId"] == "alpha"
        assert record["captionURLs"]["French"]["sourceServerId"] == "beta"
        assert record["captionSource"] == "alpha"

    def test_three_languages_converge_in_either_run_order(self, mock_fetcher, config, servers, alpha_raw, beta_raw):
        """alpha: English + Spanish, beta: French. Both run orders store the same map."""
        from snapshot.ingest import parse_server_snapshot
        from store.memory import InMemoryRecordStore
        from sync.availability import FieldAvailabilityIndex
        from sync.orchestrator import SyncOrchestrator

        alpha_raw["movies"]["Heat"]["urls"]["subtitles"]["Spanish"] = {
            "url": "/movies/Heat/Heat.es.srt",
            "srcLang": "es",
        }
        del beta_raw["movies"]["Heat"]["urls"]["subtitles"]["English"]
        snaps = {
            "alpha": parse_server_snapshot("alpha", alpha_raw),
            "beta": parse_server_snapshot("beta", beta_raw),
        }
        by_id = {s.id: s for s in servers}
        index = FieldAvailabilityIndex.build(list(snaps.values()), servers)

        def merged(order):
            store = InMemoryRecordStore()
            orchestrator = SyncOrchestrator(store, mock_fetcher, config)
            for server_id in order:
                orchestrator.run(by_id[server_id], snaps[server_id], index)
            record = store.find_by_key(MediaKind.MOVIE, HEAT)
            return record["captionURLs"], record["captionSource"]

        forward = merged(("alpha", "beta"))
        backward = merged(("beta", "alpha"))

        assert list(forward[0]) == ["English", "Spanish", "French"]
        assert list(backward[0]) == list(forward[0])
        assert backward == forward
        assert forward[1] == "alpha"


# =============================================================================
# Failure handling
# =============================================================================

class TestFailureHandling:
    """Tests for aborts, containment and cancellation."""

    def test_missing_snapshot_aborts_run(self, orchestrator, alpha_server, index, memory_store):
        from sync.orchestrator import RunState

        result = orchestrator.run(alpha_server, None, index)

        assert result.state is RunState.ABORTED
        assert len(result.errors) == 1
        assert "No snapshot" in result.errors[0]
        assert memory_store.write_count == 0

    def test_server_outside_index_aborts_run(self, orchestrator, servers, alpha_snapshot, beta_server, beta_snapshot):
        from sync.availability import FieldAvailabilityIndex
        from sync.orchestrator import RunState

        alpha_only = FieldAvailabilityIndex.build([alpha_snapshot], servers)
        result = orchestrator.run(beta_server, beta_snapshot, alpha_only)

        assert result.state is RunState.ABORTED
        assert "availability index" in result.errors[0]

    def test_mismatched_snapshot_aborts_run(self, orchestrator, alpha_server, beta_snapshot, index):
        from sync.orchestrator import RunState

        assert orchestrator.run(alpha_server, beta_snapshot, index).state is RunState.ABORTED

    def test_failed_group_does_not_block_other_groups(self, orchestrator, snapshots, payloads, memory_store):
        """A metadata fetch failure is reported; Heat's other fields still sync."""
        del payloads["http://alpha.test/movies/Heat/metadata.json"]

        results = orchestrator.run_all(snapshots)

        alpha = results[0]
        assert alpha.completed
        assert len(alpha.errors) == 1
        assert alpha.errors[0].startswith("Heat: metadata:")
        assert heat(memory_store)["videoSource"] == "alpha"
        assert "metadata" not in heat(memory_store)

    def test_failed_title_does_not_block_other_titles(self, orchestrator, alpha_server, alpha_snapshot, index):
        from sync.synchronizers import default_synchronizers

        boom = MagicMock()
        boom.name = "boom"
        boom.sync.side_effect = lambda ctx, offer, record: (
            (_ for _ in ()).throw(RuntimeError("kaput")) if offer.key == HEAT else None
        )
        orchestrator.synchronizers = [boom] + default_synchronizers()

        result = orchestrator.run(alpha_server, alpha_snapshot, index)

        assert result.errors == ["Heat: boom: kaput"]
        assert len(result.updated_titles) == 5

    def test_bootstrap_failure_reported(self, orchestrator, alpha_server, alpha_snapshot, index, memory_store):
        """Titles whose placeholder couldn't be created are reported, not fatal."""
        from store.base import PersistenceError

        memory_store.bulk_insert_placeholders = MagicMock(side_effect=PersistenceError("disk full"))

        result = orchestrator.run(alpha_server, alpha_snapshot, index)

        assert result.completed
        assert any("Bootstrap of movie titles failed" in e for e in result.errors)
        assert any("was not bootstrapped" in e for e in result.errors)

    def test_cancel_before_start(self, orchestrator, alpha_server, alpha_snapshot, index, memory_store):
        cancel = threading.Event()
        cancel.set()

        result = orchestrator.run(alpha_server, alpha_snapshot, index, cancel_event=cancel)

        assert result.cancelled is True
        assert result.titles == []
        assert memory_store.write_count == 0

    def test_cancel_mid_run_keeps_applied_patches(self, orchestrator, alpha_server, alpha_snapshot, index, memory_store):
        """Setting the event while movies run stops before shows; movie writes stay."""
        from sync.synchronizers import default_synchronizers

        cancel = threading.Event()
        trip = MagicMock()
        trip.name = "trip"
        trip.sync.side_effect = lambda ctx, offer, record: cancel.set()
        orchestrator.synchronizers = default_synchronizers() + [trip]

        result = orchestrator.run(alpha_server, alpha_snapshot, index, cancel_event=cancel)

        assert result.cancelled is True
        assert [t.kind for t in result.titles] == [MediaKind.MOVIE]
        assert heat(memory_store)["videoSource"] == "alpha"
        assert memory_store.find_by_key(MediaKind.SHOW, TitleKey("Dark")).get("posterURL") is None


# =============================================================================
# History and run_all plumbing
# =============================================================================

class TestRunBookkeeping:
    """Tests for stats, history and run_all arguments."""

    def test_kind_stats(self, orchestrator, snapshots):
        alpha = orchestrator.run_all(snapshots)[0]

        assert alpha.kind_stats["movie"].processed == 1
        assert alpha.kind_stats["episode"].processed == 2
        assert alpha.kind_stats["episode"].created == 2
        assert alpha.kind_stats["season"].updated == 1

    def test_runs_recorded_in_history(self, memory_store, mock_fetcher, config, snapshots, tmp_path):
        from sync.history import SyncHistoryLog
        from sync.orchestrator import SyncOrchestrator

        history = SyncHistoryLog(str(tmp_path))
        SyncOrchestrator(memory_store, mock_fetcher, config, history=history).run_all(snapshots)

        entries = history.recent()
        assert [e.server_id for e in entries] == ["alpha", "beta"]
        assert entries[0].kinds["movie"].processed == 1
        assert entries[0].completed is True

    def test_run_all_without_servers_or_config(self, memory_store, mock_fetcher, snapshots):
        from sync.orchestrator import SyncOrchestrator

        with pytest.raises(ValueError):
            SyncOrchestrator(memory_store, mock_fetcher).run_all(snapshots)

    def test_run_all_rejects_shared_priority(self, memory_store, mock_fetcher, snapshots):
        from sync.orchestrator import SyncOrchestrator
        from validation.config import ServerDescriptor

        tied = [
            ServerDescriptor(id="alpha", priority=1, base_url="http://alpha.test"),
            ServerDescriptor(id="beta", priority=1, base_url="http://beta.test"),
        ]

        with pytest.raises(ValueError, match="share priority 1"):
            SyncOrchestrator(memory_store, mock_fetcher).run_all(snapshots, servers=tied)
        assert memory_store.write_count == 0

    def test_configured_server_without_snapshot_aborts_only_itself(
        self, orchestrator, alpha_snapshot, alpha_server, beta_server
    ):
        from sync.orchestrator import RunState

        results = orchestrator.run_all([alpha_snapshot], servers=[beta_server, alpha_server])

        assert [r.state for r in results] == [RunState.COMPLETED, RunState.ABORTED]
