"""
Tests for the FlatSync command line entry point.

Snapshots come from files; the few metadata and placeholder-hash URLs the
sync fetches are mocked with respx.
"""

import json
import logging

import httpx
import pytest
import respx

import FlatSync


@pytest.fixture(autouse=True)
def restore_logging():
    """main() reconfigures the flatsync logger; undo it for later tests."""
    logger = logging.getLogger("flatsync")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "flatsync.json"
    path.write_text(json.dumps({
        "servers": [
            {"id": "alpha", "priority": 1, "base_url": "http://alpha.test"},
            {"id": "beta", "priority": 2, "base_url": "http://beta.test"},
        ],
        "data_dir": str(tmp_path / "data"),
        "retry_limit": 0,
        "cache_enabled": False,
    }))
    return str(path)


@pytest.fixture
def snapshot_args(tmp_path, alpha_raw, beta_raw):
    alpha = tmp_path / "alpha.json"
    beta = tmp_path / "beta.json"
    alpha.write_text(json.dumps(alpha_raw))
    beta.write_text(json.dumps(beta_raw))
    return ["--snapshot", f"alpha={alpha}", "--snapshot", f"beta={beta}"]


@pytest.fixture
def file_server(payloads):
    with respx.mock(assert_all_called=False) as router:
        for url, payload in payloads.items():
            if isinstance(payload, str):
                router.get(url).mock(return_value=httpx.Response(200, text=payload))
            else:
                router.get(url).mock(return_value=httpx.Response(200, json=payload))
        yield router


# =============================================================================
# Argument helpers
# =============================================================================

class TestParseSnapshotArgs:
    """Tests for ID=PATH parsing."""

    def test_pairs(self):
        assert FlatSync.parse_snapshot_args(["a=/tmp/a.json", "b=/tmp/b=c.json"]) == {
            "a": "/tmp/a.json",
            "b": "/tmp/b=c.json",
        }

    @pytest.mark.parametrize("value", ["nopath", "=x.json", "a="])
    def test_malformed(self, value):
        with pytest.raises(ValueError):
            FlatSync.parse_snapshot_args([value])

    def test_none(self):
        assert FlatSync.parse_snapshot_args(None) == {}


class TestLoadConfig:
    """Tests for config file loading."""

    def test_missing_file(self, tmp_path):
        config, error = FlatSync.load_config(str(tmp_path / "nope.json"))
        assert config is None
        assert "not found" in error

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        assert FlatSync.load_config(str(path))[0] is None


# =============================================================================
# Commands
# =============================================================================

class TestMain:
    """Tests for main() dispatch."""

    def test_invalid_config_exits_2(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"servers": [
            {"id": "a", "priority": 1, "base_url": "http://a.test"},
            {"id": "b", "priority": 1, "base_url": "http://b.test"},
        ]}))

        assert FlatSync.main(["--config", str(path), "cache-stats"]) == 2

    def test_sync_from_snapshot_files(self, config_path, snapshot_args, file_server, capsys, tmp_path):
        from snapshot.models import MediaKind, TitleKey
        from store.sqlite import SQLiteRecordStore

        code = FlatSync.main(["--config", config_path, "sync", *snapshot_args])

        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert [r["server"] for r in output["runs"]] == ["alpha", "beta"]
        assert output["runs"][0]["state"] == "completed"
        assert output["runs"][1]["created"] == 1
        assert output["loadErrors"] == []

        store = SQLiteRecordStore(str(tmp_path / "data"))
        record = store.find_by_key(MediaKind.MOVIE, TitleKey("Heat"))
        assert record["videoSource"] == "alpha"
        assert record["backdropSource"] == "beta"
        assert record["posterBlurhash"] == "LEHV6nWB2yk8pyo0adR*.7kCMdnj"

    def test_sync_reports_only_selected_server(self, config_path, snapshot_args, file_server, capsys):
        code = FlatSync.main(["--config", config_path, "sync", *snapshot_args, "--server", "beta"])

        assert code == 0
        assert [r["server"] for r in json.loads(capsys.readouterr().out)["runs"]] == ["beta"]

    def test_sync_unknown_server_exits_2(self, config_path):
        assert FlatSync.main(["--config", config_path, "sync", "--server", "gamma"]) == 2

    def test_sync_bad_snapshot_arg_exits_2(self, config_path):
        assert FlatSync.main(["--config", config_path, "sync", "--snapshot", "alpha"]) == 2

    def test_unreadable_snapshot_reported(self, config_path, snapshot_args, file_server, capsys, tmp_path):
        args = snapshot_args[:2] + ["--snapshot", f"beta={tmp_path / 'missing.json'}"]

        code = FlatSync.main(["--config", config_path, "sync", *args])

        assert code == 1
        output = json.loads(capsys.readouterr().out)
        assert output["loadErrors"][0].startswith("beta:")
        assert output["runs"][1]["state"] == "aborted"

    def test_verify_without_compare(self, config_path, snapshot_args, file_server, capsys, tmp_path):
        FlatSync.main(["--config", config_path, "sync", *snapshot_args])
        capsys.readouterr()
        report_path = tmp_path / "report.json"

        code = FlatSync.main(["--config", config_path, "verify", "--no-compare", "-o", str(report_path)])

        assert code == 0
        report = json.loads(report_path.read_text())
        assert report["totalMedia"] == 6
        assert report["missingItems"]["movies"] == []
        assert len(report["syncTimings"]["history"]) == 2

    def test_verify_against_snapshot_files(self, config_path, snapshot_args, capsys):
        """With an empty store every advertised title is missing."""
        code = FlatSync.main(["--config", config_path, "verify", *snapshot_args])

        assert code == 0
        report = json.loads(capsys.readouterr().out)
        assert report["totalMedia"] == 0
        assert [m["title"] for m in report["missingItems"]["movies"]] == ["Heat", "Heat", "Ronin"]

    def test_cache_stats_and_clear(self, config_path, capsys):
        assert FlatSync.main(["--config", config_path, "cache-stats"]) == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["count"] == 0

        assert FlatSync.main(["--config", config_path, "cache-clear"]) == 0


class TestBuildParser:
    """Tests for environment-driven defaults."""

    def test_defaults_from_settings(self):
        from validation.config import CliSettings

        parser = FlatSync.build_parser(CliSettings(config_file="/etc/fs.json", log_level="debug"))
        args = parser.parse_args(["cache-stats"])

        assert args.config == "/etc/fs.json"
        assert args.log_level == "debug"
        assert args.log_json is False
