"""Tests for the load executor and error policies."""

from collections.abc import Callable

import pandas as pd
import pytest

from stageload.config.settings import (
    ColumnSpec,
    ColumnType,
    ErrorPolicy,
    FileFormat,
    FormatType,
    TableSchema,
)
from stageload.errors import ConfigError
from stageload.ingestion.loader import FileStatus, LoadExecutor, LoadResult, LoadStatus
from stageload.storage.store import TableStore

GOOD = "id,name,score\n1,ada,9.5\n2,grace,8.0\n"
MIXED = "id,name,score\n3,alan,7.0\nx,bob,1.0\n4,edsger,6.5\n"


def check_accounting(result: LoadResult) -> None:
    """Every attempted row is inserted, rejected or discarded."""
    assert result.inserted + result.rejected + result.discarded == result.attempted


class TestErrorPolicies:
    """Tests for ABORT, CONTINUE and SKIP_FILE."""

    def test_continue(
        self,
        executor: LoadExecutor,
        store: TableStore,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that CONTINUE loads good rows and records the bad one."""
        uri = write_file("mixed.csv", MIXED)
        result = executor.load(people_schema, [uri], csv_format, ErrorPolicy.CONTINUE)

        assert result.status == LoadStatus.PARTIAL
        assert (result.attempted, result.inserted, result.rejected) == (3, 2, 1)
        check_accounting(result)

        rejection = result.rejections[0]
        assert rejection.record == 3
        assert rejection.kind == "type_coercion_error"
        assert rejection.column == "id"
        assert rejection.values == ("x", "bob", "1.0")
        assert result.reasons[0].startswith(f"{uri}:3:")

        assert store.read_rows("people")["id"].tolist() == [3, 4]
        assert result.files[0].status == FileStatus.PARTIALLY_LOADED

    def test_abort_commits_nothing(
        self,
        executor: LoadExecutor,
        store: TableStore,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that ABORT rolls back rows buffered before the failure."""
        uris = [write_file("a.csv", GOOD), write_file("b.csv", MIXED)]
        result = executor.load(people_schema, uris, csv_format, ErrorPolicy.ABORT)

        assert result.aborted
        assert result.status == LoadStatus.FAILURE
        assert (result.attempted, result.inserted, result.rejected, result.discarded) == (4, 0, 1, 3)
        check_accounting(result)
        assert store.read_rows("people").empty
        assert all(f.status == FileStatus.LOAD_FAILED for f in result.files)
        assert all(f.rows_loaded == 0 for f in result.files)

    def test_abort_is_default(
        self,
        executor: LoadExecutor,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that loads abort unless told otherwise."""
        result = executor.load(people_schema, [write_file("m.csv", MIXED)], csv_format)
        assert result.policy == ErrorPolicy.ABORT
        assert result.aborted

    def test_skip_file_keeps_prefix(
        self,
        executor: LoadExecutor,
        store: TableStore,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that SKIP_FILE abandons the rest of the failing file only."""
        uris = [write_file("a.csv", GOOD), write_file("b.csv", MIXED)]
        result = executor.load(people_schema, uris, csv_format, ErrorPolicy.SKIP_FILE)

        assert result.status == LoadStatus.PARTIAL
        assert (result.attempted, result.inserted, result.rejected) == (4, 3, 1)
        check_accounting(result)
        assert [f.status for f in result.files] == [FileStatus.LOADED, FileStatus.SKIPPED]
        assert store.read_rows("people")["id"].tolist() == [1, 2, 3]

    def test_all_good(
        self,
        executor: LoadExecutor,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test a clean load."""
        result = executor.load(people_schema, [write_file("a.csv", GOOD)], csv_format)
        assert result.status == LoadStatus.SUCCESS
        assert result.summary()["inserted"] == 2
        assert result.first_error is None

    def test_empty_file(
        self,
        executor: LoadExecutor,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that a header-only file loads nothing and succeeds."""
        result = executor.load(people_schema, [write_file("h.csv", "id,name,score\n")], csv_format)
        assert result.status == LoadStatus.SUCCESS
        assert result.attempted == 0


class TestNullSentinels:
    """Tests for null semantics during loads."""

    def test_null_word_stays_text(
        self,
        executor: LoadExecutor,
        store: TableStore,
        write_file: Callable[..., str],
    ) -> None:
        """Test that with null_if [''] the word NULL loads as text."""
        schema = TableSchema(
            name="notes",
            columns=(
                ColumnSpec(name="id", type=ColumnType.INTEGER),
                ColumnSpec(name="a", type=ColumnType.STRING),
                ColumnSpec(name="b", type=ColumnType.STRING),
            ),
        )
        fmt = FileFormat(name="f", null_if=[""])
        executor.load(schema, [write_file("n.csv", "1,NULL,\n")], fmt)

        frame = store.read_rows("notes")
        assert frame.loc[0, "a"] == "NULL"
        assert pd.isna(frame.loc[0, "b"])

    def test_null_into_required_column(
        self,
        executor: LoadExecutor,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that a null key is a constraint violation."""
        uri = write_file("n.csv", "id,name,score\n\\N,ada,1\n")
        result = executor.load(people_schema, [uri], csv_format, ErrorPolicy.CONTINUE)
        assert result.rejections[0].kind == "constraint_violation"
        assert result.status == LoadStatus.FAILURE


class TestColumnCountPolicy:
    """Tests for loading 9-field records into an 8-column table."""

    @pytest.fixture
    def eight(self) -> TableSchema:
        """Eight string columns."""
        return TableSchema(
            name="eight", columns=tuple(ColumnSpec(name=f"c{i}") for i in range(1, 9))
        )

    @pytest.fixture
    def nine_field_file(self, write_file: Callable[..., str]) -> str:
        """Two 9-field records."""
        return write_file("nine.csv", "1,2,3,4,5,6,7,8,9\n1,2,3,4,5,6,7,8,9\n")

    def test_rejected_with_check(
        self, executor: LoadExecutor, eight: TableSchema, nine_field_file: str
    ) -> None:
        """Test that every record is rejected when the check is on."""
        fmt = FileFormat(name="f")
        result = executor.load(eight, [nine_field_file], fmt, ErrorPolicy.CONTINUE)
        assert result.rejected == 2
        assert result.inserted == 0
        assert {r.kind for r in result.rejections} == {"column_count_mismatch"}

    def test_truncated_without_check(
        self,
        executor: LoadExecutor,
        store: TableStore,
        eight: TableSchema,
        nine_field_file: str,
    ) -> None:
        """Test that every record is truncated when the check is off."""
        fmt = FileFormat(name="f", error_on_column_count_mismatch=False)
        result = executor.load(eight, [nine_field_file], fmt, ErrorPolicy.CONTINUE)
        assert result.inserted == 2
        frame = store.read_rows("eight")
        assert list(frame.columns) == [f"c{i}" for i in range(1, 9)]
        assert frame.loc[0, "c8"] == "8"


class TestJsonLoads:
    """Tests for JSON loads."""

    def test_raw_variant(
        self, executor: LoadExecutor, store: TableStore, write_file: Callable[..., str]
    ) -> None:
        """Test that whole documents land in a single VARIANT column."""
        schema = TableSchema(name="raw", columns=(ColumnSpec(name="v", type=ColumnType.VARIANT),))
        fmt = FileFormat(name="j", type=FormatType.JSON, strip_outer_array=True)
        uri = write_file("w.json", '[{"city": {"name": "NYC"}}, {"city": {"name": "LA"}}]')
        result = executor.load(schema, [uri], fmt)

        assert result.inserted == 2
        assert store.read_rows("raw")["v"].tolist() == [
            {"city": {"name": "NYC"}},
            {"city": {"name": "LA"}},
        ]

    def test_path_columns(
        self, executor: LoadExecutor, store: TableStore, write_file: Callable[..., str]
    ) -> None:
        """Test that columns are extracted by path and coerced."""
        schema = TableSchema(
            name="obs",
            columns=(
                ColumnSpec(name="city", path="city.name"),
                ColumnSpec(name="temp", type=ColumnType.NUMBER, path="main.temp"),
                ColumnSpec(name="sky", path="weather[0].main"),
            ),
        )
        fmt = FileFormat(name="j", type=FormatType.JSON)
        uri = write_file(
            "w.json",
            '{"city": {"name": "NYC"}, "main": {"temp": 64.4}, "weather": [{"main": "Clear"}]}\n'
            '{"city": {"name": "LA"}, "main": {}}\n',
        )
        executor.load(schema, [uri], fmt)

        frame = store.read_rows("obs")
        assert frame["city"].tolist() == ["NYC", "LA"]
        assert frame.loc[0, "temp"] == 64.4
        assert pd.isna(frame.loc[1, "temp"])
        assert pd.isna(frame.loc[1, "sky"])

    def test_malformed_document_rejected(
        self, executor: LoadExecutor, write_file: Callable[..., str]
    ) -> None:
        """Test that malformed JSON is a decode-error rejection."""
        schema = TableSchema(name="raw", columns=(ColumnSpec(name="v", type=ColumnType.VARIANT),))
        fmt = FileFormat(name="j", type=FormatType.JSON)
        uri = write_file("bad.json", '{"a": 1}\n{oops}\n')
        result = executor.load(schema, [uri], fmt, ErrorPolicy.CONTINUE)
        assert (result.inserted, result.rejected) == (1, 1)
        assert result.rejections[0].kind == "decode_error"


class TestLoadHistory:
    """Tests for skipping already-loaded files."""

    def test_reload_skipped(
        self,
        executor: LoadExecutor,
        store: TableStore,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that unchanged files are not loaded twice unless forced."""
        uri = write_file("a.csv", GOOD)
        executor.load(people_schema, [uri], csv_format)

        again = executor.load(people_schema, [uri], csv_format)
        assert again.files[0].status == FileStatus.ALREADY_LOADED
        assert again.attempted == 0
        assert len(store.read_rows("people")) == 2

        forced = executor.load(people_schema, [uri], csv_format, force=True)
        assert forced.inserted == 2
        assert len(store.read_rows("people")) == 4

    def test_changed_file_reloaded(
        self,
        executor: LoadExecutor,
        store: TableStore,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that a file with new content is loaded again."""
        uri = write_file("a.csv", GOOD)
        executor.load(people_schema, [uri], csv_format)
        write_file("a.csv", GOOD + "5,barbara,9.9\n")
        result = executor.load(people_schema, [uri], csv_format)
        assert result.inserted == 3

    def test_truncate_forgets_history(
        self,
        executor: LoadExecutor,
        store: TableStore,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that truncating a table allows its files to load again."""
        uri = write_file("a.csv", GOOD)
        executor.load(people_schema, [uri], csv_format)
        store.truncate("people")
        assert executor.load(people_schema, [uri], csv_format).inserted == 2

    def test_failed_file_retried_after_format_fix(
        self,
        executor: LoadExecutor,
        store: TableStore,
        write_file: Callable[..., str],
    ) -> None:
        """Test that a file which loaded nothing is not remembered as loaded."""
        schema = TableSchema(
            name="visits",
            columns=(
                ColumnSpec(name="id", type=ColumnType.INTEGER),
                ColumnSpec(name="day", type=ColumnType.DATE),
            ),
        )
        uri = write_file("visits.csv", "id,day\n1,01-06-2018\n2,02-06-2018\n")

        failed = executor.load(schema, [uri], FileFormat(name="plain"), ErrorPolicy.CONTINUE)
        assert failed.status == LoadStatus.FAILURE
        assert failed.files[0].status == FileStatus.LOAD_FAILED
        assert store.loaded_files("visits") == {}

        fixed = FileFormat(name="dmy", skip_header=1, date_format="DD-MM-YYYY")
        result = executor.load(schema, [uri], fixed)
        assert result.status == LoadStatus.SUCCESS
        assert result.files[0].status == FileStatus.LOADED
        assert result.inserted == 2
        assert store.read_rows("visits")["id"].tolist() == [1, 2]

    def test_skipped_file_without_rows_retried(
        self,
        executor: LoadExecutor,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that a file skipped at its first record is attempted again."""
        uri = write_file("bad.csv", "id,name,score\nx,bob,1.0\n")
        first = executor.load(people_schema, [uri], csv_format, ErrorPolicy.SKIP_FILE)
        assert first.files[0].status == FileStatus.SKIPPED

        again = executor.load(people_schema, [uri], csv_format, ErrorPolicy.SKIP_FILE)
        assert again.files[0].status == FileStatus.SKIPPED
        assert again.attempted == 1

    def test_partial_file_remembered(
        self,
        executor: LoadExecutor,
        store: TableStore,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that a file with committed rows is not loaded twice."""
        uri = write_file("mixed.csv", MIXED)
        executor.load(people_schema, [uri], csv_format, ErrorPolicy.CONTINUE)
        again = executor.load(people_schema, [uri], csv_format, ErrorPolicy.CONTINUE)
        assert again.files[0].status == FileStatus.ALREADY_LOADED
        assert store.read_rows("people")["id"].tolist() == [3, 4]


class TestStorageRange:
    """Tests for values the table's column dtypes cannot hold."""

    def test_date_before_timestamp_range(
        self,
        executor: LoadExecutor,
        store: TableStore,
        write_file: Callable[..., str],
    ) -> None:
        """Test that a year-1 date is rejected instead of failing the commit."""
        schema = TableSchema(
            name="visits",
            columns=(
                ColumnSpec(name="id", type=ColumnType.INTEGER),
                ColumnSpec(name="day", type=ColumnType.DATE),
            ),
        )
        uri = write_file("old.csv", "id,day\n1,2018-06-01\n2,0001-01-01\n")
        fmt = FileFormat(name="f", skip_header=1)
        result = executor.load(schema, [uri], fmt, ErrorPolicy.CONTINUE)

        assert (result.inserted, result.rejected) == (1, 1)
        check_accounting(result)
        assert result.rejections[0].kind == "type_coercion_error"
        assert result.rejections[0].column == "day"
        assert store.read_rows("visits")["id"].tolist() == [1]

    def test_integer_beyond_64_bits(
        self,
        executor: LoadExecutor,
        store: TableStore,
        write_file: Callable[..., str],
    ) -> None:
        """Test that an integer wider than Int64 is rejected."""
        schema = TableSchema(name="counts", columns=(ColumnSpec(name="n", type=ColumnType.INTEGER),))
        uri = write_file("big.csv", "n\n1\n99999999999999999999\n")
        fmt = FileFormat(name="f", skip_header=1)
        result = executor.load(schema, [uri], fmt, ErrorPolicy.CONTINUE)

        assert (result.inserted, result.rejected) == (1, 1)
        check_accounting(result)
        assert result.rejections[0].kind == "type_coercion_error"
        assert store.read_rows("counts")["n"].tolist() == [1]


class TestAuditFrames:
    """Tests for the LoadResult frames."""

    def test_frames_validate(
        self,
        executor: LoadExecutor,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that rejection and file frames pass their schemas."""
        uri = write_file("m.csv", MIXED)
        result = executor.load(people_schema, [uri], csv_format, ErrorPolicy.CONTINUE)

        rejections = result.rejections_frame()
        assert rejections.loc[0, "kind"] == "type_coercion_error"
        assert rejections.loc[0, "record"] == 3

        files = result.files_frame()
        assert files.loc[0, "status"] == "partially_loaded"
        assert files.loc[0, "rows_loaded"] == 2

    def test_conflicting_schema(
        self,
        executor: LoadExecutor,
        people_schema: TableSchema,
        csv_format: FileFormat,
        write_file: Callable[..., str],
    ) -> None:
        """Test that a table cannot be loaded under two definitions."""
        uri = write_file("a.csv", GOOD)
        executor.load(people_schema, [uri], csv_format)
        other = TableSchema(name="people", columns=(ColumnSpec(name="id"),))
        with pytest.raises(ConfigError, match="different definition"):
            executor.load(other, [uri], csv_format)
