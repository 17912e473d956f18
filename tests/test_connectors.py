"""Tests for caremigrate.connectors."""

import json
from unittest.mock import MagicMock

import pytest
import requests

from caremigrate.connectors.api_connector import ApiConnector
from caremigrate.connectors.base import ConnectorRegistry, SourceConnector
from caremigrate.connectors.file_connector import FileConnector
from caremigrate.connectors.static import StaticConnector
from caremigrate.errors import ConnectorError


# ---------------------------------------------------------------------------
# Helpers / Fixtures
# ---------------------------------------------------------------------------
class FlakyConnector(SourceConnector):
    """Fails part-way through the first ``failures`` extractions."""

    name = "flaky"

    def __init__(self, rows, failures=1, fail_at=2, error=None, **kwargs):
        super().__init__(**kwargs)
        self.rows = rows
        self.failures = failures
        self.fail_at = fail_at
        self.error = error or IOError("connection reset by peer")
        self.calls = 0

    def extract(self, config):
        self.calls += 1
        for index, row in enumerate(self.rows):
            if self.calls <= self.failures and index == self.fail_at:
                raise self.error
            yield row


ROWS = [{"id": f"R{i}"} for i in range(5)]


# ---------------------------------------------------------------------------
# Restart behaviour
# ---------------------------------------------------------------------------
class TestIterRows:

    def test_restart_skips_rows_already_yielded(self):
        connector = FlakyConnector(ROWS, failures=1)
        assert list(connector.iter_rows({})) == ROWS
        assert connector.calls == 2

    def test_gives_up_after_max_retries(self):
        connector = FlakyConnector(ROWS, failures=10, max_retries=2)
        with pytest.raises(ConnectorError, match="after 2 retries"):
            list(connector.iter_rows({}))
        assert connector.calls == 3

    def test_non_retryable_error_propagates(self):
        connector = FlakyConnector(ROWS, error=ConnectorError("bad credentials", connector="flaky"))
        with pytest.raises(ConnectorError, match="bad credentials"):
            list(connector.iter_rows({}))
        assert connector.calls == 1

    def test_extract_all_collects_warnings(self):
        result = FlakyConnector(ROWS, failures=1).extract_all({})
        assert result.total_extracted == 5
        assert result.success
        assert len(result.warnings) == 1

    def test_sample_and_stream(self):
        connector = StaticConnector("static", rows=ROWS)
        assert connector.sample({}, size=2) == ROWS[:2]
        assert [len(b) for b in connector.stream({}, batch_size=2)] == [2, 2, 1]

    def test_static_rows_from_config(self):
        connector = StaticConnector("static", rows=ROWS)
        assert list(connector.iter_rows({"rows": [{"id": "X"}]})) == [{"id": "X"}]


class TestRegistry:

    def test_lookup(self):
        registry = ConnectorRegistry()
        registry.register(StaticConnector("legacy_pcs"))
        assert "legacy_pcs" in registry
        assert registry.names() == ["legacy_pcs"]
        assert registry.describe()[0]["name"] == "legacy_pcs"

    def test_unknown_connector(self):
        with pytest.raises(ConnectorError, match="Unknown source connector"):
            ConnectorRegistry().get("nope")


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------
class TestFileConnector:

    def test_csv(self, tmp_path):
        path = tmp_path / "residents.csv"
        path.write_text(
            "PatientID,Surname,DOB\n"
            "PCS001,Smith,15/03/1940\n"
            "PCS002,,02/11/1935\n"
            ",,\n"
        )
        connector = FileConnector()
        rows = list(connector.iter_rows({"path": str(path)}))
        assert rows == [
            {"PatientID": "PCS001", "Surname": "Smith", "DOB": "15/03/1940"},
            {"PatientID": "PCS002", "Surname": None, "DOB": "02/11/1935"},
        ]

    def test_csv_column_mapping(self, tmp_path):
        path = tmp_path / "residents.csv"
        path.write_text("PatientID,Surname\nPCS001,Smith\nPCS002,Jones\n")
        rows = list(FileConnector().iter_rows({"path": str(path), "column_mapping": {"PatientID": "patient_id"}}))
        assert rows[0] == {"patient_id": "PCS001", "Surname": "Smith"}

    def test_json_envelope(self, tmp_path):
        path = tmp_path / "export.json"
        path.write_text(json.dumps({"residents": [{"id": "R1"}, {"id": "R2"}, "junk"]}))
        connector = FileConnector()
        assert list(connector.iter_rows({"path": str(path)})) == [{"id": "R1"}, {"id": "R2"}]

    def test_jsonl(self, tmp_path):
        path = tmp_path / "export.jsonl"
        path.write_text('{"id": "R1"}\n\nnot json\n{"id": "R2"}\n')
        assert list(FileConnector().iter_rows({"path": str(path)})) == [{"id": "R1"}, {"id": "R2"}]

    def test_pattern_reads_every_file(self, tmp_path):
        (tmp_path / "a.json").write_text(json.dumps([{"id": "A"}]))
        (tmp_path / "b.json").write_text(json.dumps([{"id": "B"}]))
        rows = list(FileConnector().iter_rows({"pattern": str(tmp_path / "*.json")}))
        assert rows == [{"id": "A"}, {"id": "B"}]

    def test_missing_file(self, tmp_path):
        connector = FileConnector()
        config = {"path": str(tmp_path / "missing.csv")}
        assert connector.health_check(config) is False
        with pytest.raises(ConnectorError, match="No files found"):
            list(connector.iter_rows(config))


# ---------------------------------------------------------------------------
# REST APIs
# ---------------------------------------------------------------------------
def _response(payload, status=200):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


class TestApiConnector:

    def test_offset_pagination(self):
        session = MagicMock()
        session.get.side_effect = [
            _response({"data": [{"id": "R1"}, {"id": "R2"}]}),
            _response({"data": [{"id": "R3"}]}),
        ]
        connector = ApiConnector(session=session)
        rows = list(connector.iter_rows({
            "base_url": "https://pcs.example.org",
            "endpoint": "/residents",
            "page_size": 2,
        }))
        assert [r["id"] for r in rows] == ["R1", "R2", "R3"]
        assert session.get.call_count == 2

    def test_next_url_pagination(self):
        session = MagicMock()
        session.get.side_effect = [
            _response({"data": [{"id": "R1"}], "next": "https://pcs.example.org/residents?cursor=2"}),
            _response({"data": [{"resident": {"id": "R2"}}], "next": None}),
        ]
        connector = ApiConnector(session=session)
        rows = list(connector.iter_rows({"base_url": "https://pcs.example.org", "pagination": "next_url"}))
        assert rows == [{"id": "R1"}, {"id": "R2"}]

    def test_bearer_auth_header(self):
        session = MagicMock()
        session.get.return_value = _response([])
        connector = ApiConnector(session=session)
        list(connector.iter_rows({"base_url": "https://pcs.example.org", "api_key": "k-123"}))
        assert session.get.call_args.kwargs["headers"] == {"Authorization": "Bearer k-123"}

    def test_client_error_is_not_retried(self):
        error_response = MagicMock(status_code=401, text="unauthorised")
        response = _response({})
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=error_response)
        session = MagicMock()
        session.get.return_value = response

        connector = ApiConnector(session=session)
        with pytest.raises(ConnectorError, match="HTTP error: 401"):
            list(connector.iter_rows({"base_url": "https://pcs.example.org"}))
        assert session.get.call_count == 1

    def test_missing_base_url(self):
        assert ApiConnector(session=MagicMock()).health_check({}) is False
