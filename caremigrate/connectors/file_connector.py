"""CSV/JSON file connector."""

import csv
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union
import glob as globmodule

from .base import SourceConnector
from ..errors import ConnectorError

logger = logging.getLogger(__name__)

_NULL_VALUES = ("null", "none", "n/a", "na")


class FileConnector(SourceConnector):
    """
    Connector for CSV, JSON and JSON Lines exports of legacy systems.

    Config keys:
    - path: a single file
    - pattern: glob pattern for several files
    - encoding: file encoding (default utf-8, latin-1 fallback for CSV)
    - delimiter: CSV delimiter when it cannot be sniffed
    - column_mapping: rename columns on the way in
    - infer_types: convert numeric/boolean strings (default False)
    """

    system_type = "file_based"
    supported_formats = ["csv", "json", "jsonl"]

    def __init__(self, name: str = "generic_file", **kwargs):
        super().__init__(name=name, **kwargs)

    def extract(self, config: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        files = self._get_files(config)
        if not files:
            raise ConnectorError(
                f"No files found matching: {config.get('path') or config.get('pattern')}",
                connector=self.name,
            )

        for file_path in files:
            logger.info(f"Processing file: {file_path}")
            suffix = file_path.suffix.lower()
            if suffix == ".json":
                rows = self._extract_json(file_path, config)
            elif suffix == ".jsonl":
                rows = self._extract_jsonl(file_path, config)
            elif suffix == ".csv":
                rows = self._extract_csv(file_path, config)
            else:
                raise ConnectorError(f"Unsupported file format: {suffix}", connector=self.name)

            for row in rows:
                yield self._map_columns(row, config)

    def health_check(self, config: Optional[Dict[str, Any]] = None) -> bool:
        if not config:
            return True
        return len(self._get_files(config)) > 0

    def _get_files(self, config: Dict[str, Any]) -> List[Path]:
        """Get list of files to process."""
        files = []

        if config.get("path"):
            path = Path(config["path"])
            if path.exists():
                files.append(path)

        if config.get("pattern"):
            pattern_files = globmodule.glob(config["pattern"], recursive=True)
            files.extend(Path(f) for f in pattern_files)

        return sorted(set(files))

    def _extract_csv(self, file_path: Path, config: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """Extract rows from a CSV file."""
        encoding = config.get("encoding", "utf-8")
        try:
            with open(file_path, "r", encoding=encoding, newline="") as f:
                # Decode the whole file first so a decode error is raised before any row is yielded
                f.read()
        except UnicodeDecodeError:
            logger.warning(f"{encoding} decode failed, trying latin-1 for {file_path}")
            encoding = "latin-1"

        with open(file_path, "r", encoding=encoding, newline="") as f:
            sample = f.read(8192)
            f.seek(0)

            try:
                dialect = csv.Sniffer().sniff(sample, delimiters=",;\t|")
                delimiter = dialect.delimiter
            except csv.Error:
                delimiter = config.get("delimiter", ",")

            reader = csv.DictReader(f, delimiter=delimiter)
            for row_num, row in enumerate(reader, start=1):
                data = self._process_row(row, config)
                if data is None:
                    self.add_warning(f"Skipping empty row {row_num} in {file_path.name}")
                    continue
                yield data

    def _extract_json(self, file_path: Path, config: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """Extract rows from a JSON file."""
        try:
            with open(file_path, "r", encoding=config.get("encoding", "utf-8")) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConnectorError(f"Invalid JSON in {file_path}: {e}", connector=self.name)

        # Handle different JSON structures
        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            for key in ["data", "records", "items", "results", "residents"]:
                if key in data and isinstance(data[key], list):
                    items = data[key]
                    break
            else:
                items = [data]
        else:
            raise ConnectorError(f"Unexpected JSON structure in {file_path}", connector=self.name)

        for idx, item in enumerate(items):
            if not isinstance(item, dict):
                self.add_warning(f"Skipping non-object item {idx} in {file_path.name}")
                continue
            yield item

    def _extract_jsonl(self, file_path: Path, config: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """Extract rows from a JSON Lines file."""
        with open(file_path, "r", encoding=config.get("encoding", "utf-8")) as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    item = json.loads(line)
                except json.JSONDecodeError as e:
                    self.add_warning(f"Invalid JSON on line {line_num} of {file_path.name}: {e}")
                    continue
                yield item

    def _process_row(self, row: Dict[str, Optional[str]], config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Clean a CSV row; returns None for an empty row."""
        infer = config.get("infer_types", False)
        data = {}
        for column, value in row.items():
            if column is None:
                continue
            if value is not None:
                value = value.strip()
                if value == "":
                    value = None
                elif infer:
                    value = self._infer_type(value)
            data[column.strip()] = value

        if all(v is None for v in data.values()):
            return None
        return data

    def _map_columns(self, row: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        mapping = config.get("column_mapping")
        if not mapping:
            return row
        return {mapping.get(key, key): value for key, value in row.items()}

    def _infer_type(self, value: str) -> Union[str, int, float, bool, None]:
        """Infer the type of a string value."""
        lowered = value.lower()

        if lowered in ("true", "yes"):
            return True
        if lowered in ("false", "no"):
            return False
        if lowered in _NULL_VALUES:
            return None

        # Identifiers and phone numbers with leading zeros stay strings
        if len(value) > 1 and value.startswith("0") and not value.startswith("0."):
            return value

        try:
            if "." not in value:
                return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value
