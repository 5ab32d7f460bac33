"""Tests for pipeline orchestration."""

from pathlib import Path
from typing import Any

import pytest

from stageload.config.loader import build_config, load_config
from stageload.config.settings import ErrorPolicy
from stageload.errors import ConfigError, NotFoundError, PermissionDeniedError
from stageload.etl import Pipeline
from stageload.ingestion.loader import LoadStatus

TOP_SCORERS = {
    "name": "top_scorers",
    "sources": ["people"],
    "steps": [
        {"op": "filter", "expression": "score > 9"},
        {"op": "select", "columns": ["id", "name"]},
    ],
}


def add_bad_file(config_dict: dict[str, Any]) -> None:
    """Stage a second file with an uncastable id."""
    stage_dir = Path(config_dict["data_root"]) / "people"
    (stage_dir / "part-2.csv").write_text("id,name,score\n3,alan,7.0\nx,bob,1.0\n")


class TestRunLoad:
    """Tests for single load invocations."""

    def test_load(self, config_dict: dict[str, Any]) -> None:
        """Test loading a stage by name."""
        pipeline = Pipeline(build_config(config_dict))
        result = pipeline.run_load("people", "people", "csv")

        assert result.status == LoadStatus.SUCCESS
        assert result.inserted == 2
        assert pipeline.query.read("people")["name"].tolist() == ["ada", "grace"]

    def test_policy_argument(self, config_dict: dict[str, Any]) -> None:
        """Test that the policy is taken per invocation."""
        add_bad_file(config_dict)
        pipeline = Pipeline(build_config(config_dict))

        aborted = pipeline.run_load("people", "people", "csv", ErrorPolicy.ABORT)
        assert aborted.status == LoadStatus.FAILURE
        assert pipeline.store.read_rows("people").empty

        continued = pipeline.run_load("people", "people", "csv", ErrorPolicy.CONTINUE)
        assert continued.status == LoadStatus.PARTIAL
        assert len(pipeline.store.read_rows("people")) == 3

    def test_unknown_format(self, config_dict: dict[str, Any]) -> None:
        """Test that unknown format names are reported."""
        with pytest.raises(ConfigError, match="Unknown file format 'tsv'"):
            Pipeline(build_config(config_dict)).run_load("people", "people", "tsv")

    def test_unknown_stage(self, config_dict: dict[str, Any]) -> None:
        """Test that unknown stages are reported."""
        with pytest.raises(NotFoundError, match="Unknown stage 'nope'"):
            Pipeline(build_config(config_dict)).run_load("nope", "people", "csv")

    def test_permission_denied(self, config_dict: dict[str, Any]) -> None:
        """Test that loads need a load grant."""
        config_dict["grants"] = [{"principal": "loader", "action": "read"}]
        pipeline = Pipeline(build_config(config_dict))
        with pytest.raises(PermissionDeniedError, match="may not load 'people'"):
            pipeline.run_load("people", "people", "csv")
        assert not pipeline.store.exists("people")


class TestRun:
    """Tests for full pipeline runs."""

    def test_loads_then_transforms(self, config_dict: dict[str, Any]) -> None:
        """Test that transforms see the loaded rows."""
        config_dict["transforms"] = [TOP_SCORERS]
        pipeline = Pipeline(build_config(config_dict))
        result = pipeline.run()

        assert result.status == LoadStatus.SUCCESS
        assert [t.name for t in result.transforms] == ["top_scorers"]
        assert result.transforms[0].rows == 1
        assert pipeline.store.read_rows("top_scorers")["name"].tolist() == ["ada"]

    def test_parallel_results_in_config_order(self, config_dict: dict[str, Any]) -> None:
        """Test that parallel loads report in configuration order."""
        config_dict["schemas"]["people_copy"] = config_dict["schemas"]["people"]
        config_dict["loads"].append({"source": "people", "table": "people_copy", "format": "csv"})
        config_dict["execution"] = {"parallel": True, "max_workers": 2}
        result = Pipeline(build_config(config_dict)).run()

        assert [r.table for r in result.loads] == ["people", "people_copy"]
        assert all(r.inserted == 2 for r in result.loads)

    def test_failed_load_skips_transforms(self, config_dict: dict[str, Any]) -> None:
        """Test that transforms do not run after an aborted load."""
        add_bad_file(config_dict)
        config_dict["transforms"] = [TOP_SCORERS]
        pipeline = Pipeline(build_config(config_dict))
        result = pipeline.run()

        assert result.loads[0].status == LoadStatus.FAILURE
        assert result.transforms_skipped
        assert result.transforms == []
        assert result.status == LoadStatus.FAILURE
        assert not pipeline.store.exists("top_scorers")

    def test_rerun_truncates(self, config_dict: dict[str, Any]) -> None:
        """Test that truncating loads can be rerun without duplicating rows."""
        config_dict["loads"][0]["truncate"] = True
        pipeline = Pipeline(build_config(config_dict))
        pipeline.run()
        second = pipeline.run()

        assert second.loads[0].inserted == 2
        assert len(pipeline.store.read_rows("people")) == 2

    def test_rerun_skips_loaded_files(self, config_dict: dict[str, Any]) -> None:
        """Test that files already loaded are not loaded twice."""
        pipeline = Pipeline(build_config(config_dict))
        pipeline.run()
        second = pipeline.run()

        assert second.loads[0].inserted == 0
        assert len(pipeline.store.read_rows("people")) == 2


class TestUnload:
    """Tests for writing tables back to files."""

    def test_unload_and_reload(self, config_dict: dict[str, Any], tmp_path: Path) -> None:
        """Test that an unloaded table loads back to the same rows."""
        pipeline = Pipeline(build_config(config_dict))
        pipeline.run()
        out = tmp_path / "export" / "people.csv"

        assert pipeline.unload("people", "csv", out) == 2
        assert out.read_text().splitlines()[0] == "id,name,score"

        reloaded = Pipeline(build_config(config_dict))
        result = reloaded.executor.load(
            reloaded.config.schema("people"), [str(out)], reloaded.config.file_format("csv")
        )
        assert result.inserted == 2
        original = pipeline.store.read_rows("people")
        assert reloaded.store.read_rows("people").equals(original)

    def test_unload_derived_table(self, config_dict: dict[str, Any], tmp_path: Path) -> None:
        """Test unloading a transform output without a registered schema."""
        config_dict["transforms"] = [TOP_SCORERS]
        config_dict["formats"]["jsonl"] = {"type": "json"}
        pipeline = Pipeline(build_config(config_dict))
        pipeline.run()
        out = tmp_path / "top.json"

        assert pipeline.unload("top_scorers", "jsonl", out) == 1
        assert out.read_text() == '{"id": 1, "name": "ada"}\n'


class TestExampleProjects:
    """End-to-end runs of the bundled configurations."""

    @pytest.fixture(autouse=True)
    def _default_data_root(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("STAGELOAD_DATA_ROOT", raising=False)

    def test_citibike(self, project_root: Path) -> None:
        """Test the bike-share project: one bad trip row, weather view."""
        pipeline = Pipeline(load_config(project_root / "configs" / "citibike.yaml"))
        result = pipeline.run()

        trips, weather = result.loads
        assert (trips.attempted, trips.inserted, trips.rejected) == (5, 4, 1)
        assert weather.inserted == 2
        assert result.status == LoadStatus.PARTIAL

        clean = pipeline.query.read("trips_clean")
        assert len(clean) == 4
        assert clean["gender_label"].tolist() == ["male", "unknown", "female", "female"]
        assert clean.loc[0, "rider_age"] == 32

        weather_vw = pipeline.query.read("weather_vw")
        assert weather_vw["conditions"].tolist() == ["Clear", "Clouds"]
        assert weather_vw.loc[0, "temp_avg_f"] == 64.4

    def test_tickets(self, project_root: Path) -> None:
        """Test the ticket project: pipe and tab formats joined."""
        pipeline = Pipeline(load_config(project_root / "configs" / "tickets.yaml"))
        result = pipeline.run()

        assert result.status == LoadStatus.SUCCESS
        sales = pipeline.query.read("sales_by_listing")
        assert sales["salesid"].tolist() == [1, 2, 3]
        assert sales.loc[0, "revenue"] == pytest.approx(618.8)
