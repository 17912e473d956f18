"""Base source connector interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional
from datetime import datetime
import itertools
import logging
import time

from ..errors import ConnectorError
from ..timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    """Result of an extraction operation."""
    connector: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    total_extracted: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success(self) -> bool:
        """Check if extraction was successful."""
        return len(self.errors) == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "connector": self.connector,
            "total_extracted": self.total_extracted,
            "errors": self.errors,
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "metadata": self.metadata,
        }


class SourceConnector(ABC):
    """
    Base class for all source connectors.

    A connector adapts one legacy system or file format. ``extract`` returns
    a lazy, finite iterator of plain dict rows; everything else (restart on
    failure, batching, sampling) is built on top of it here.
    """

    name: str = ""
    system_type: str = "file_based"  # database, file_based, api, proprietary
    supported_formats: List[str] = []

    def __init__(
        self,
        name: Optional[str] = None,
        max_retries: int = 3,
        retry_delay: float = 0.0,
    ):
        """
        Initialize the connector.

        Args:
            name: Registry name (defaults to the class attribute)
            max_retries: Restarts allowed when extraction fails part-way
            retry_delay: Seconds to wait before each restart
        """
        if name:
            self.name = name
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._errors: List[Dict[str, Any]] = []
        self._warnings: List[str] = []

    @abstractmethod
    def extract(self, config: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """
        Iterate over source rows.

        Every call must start from the beginning of the source so that a
        failed extraction can be restarted.

        Args:
            config: Connection details for this extraction

        Yields:
            Source rows as dictionaries
        """
        pass

    def health_check(self, config: Optional[Dict[str, Any]] = None) -> bool:
        """Check whether the source is reachable."""
        return True

    def iter_rows(self, config: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """
        Iterate over rows, restarting a failed extraction.

        On failure the extraction is started again and rows already yielded
        are skipped, so callers see every row exactly once. Non-retryable
        ConnectorErrors propagate immediately.

        Raises:
            ConnectorError: If the extraction still fails after max_retries restarts
        """
        yielded = 0
        attempts = 0

        while True:
            try:
                for index, row in enumerate(self.extract(config)):
                    if index < yielded:
                        continue
                    yielded += 1
                    yield row
                return
            except Exception as e:
                if isinstance(e, ConnectorError) and not e.retryable:
                    raise
                attempts += 1
                if attempts > self.max_retries:
                    raise ConnectorError(
                        f"Extraction from {self.name} failed after {self.max_retries} retries: {e}",
                        connector=self.name,
                    ) from e
                self.add_warning(
                    f"Extraction interrupted after {yielded} rows ({e}); "
                    f"restarting (attempt {attempts}/{self.max_retries})"
                )
                if self.retry_delay:
                    time.sleep(self.retry_delay)

    def extract_all(self, config: Dict[str, Any]) -> ExtractionResult:
        """Extract every row into an ExtractionResult."""
        self.reset()
        started_at = utcnow()
        rows: List[Dict[str, Any]] = []

        try:
            for row in self.iter_rows(config):
                rows.append(row)
            logger.info(f"Extracted {len(rows)} rows from {self.name}")
        except Exception as e:
            self.add_error(f"Extraction failed: {str(e)}")

        result = self.get_extraction_result(rows)
        result.started_at = started_at
        result.completed_at = utcnow()
        return result

    def sample(self, config: Dict[str, Any], size: int = 20) -> List[Dict[str, Any]]:
        """Get the first ``size`` rows."""
        return list(itertools.islice(self.iter_rows(config), size))

    def stream(self, config: Dict[str, Any], batch_size: int = 100) -> Iterator[List[Dict[str, Any]]]:
        """
        Stream rows in batches.

        Args:
            config: Connection details
            batch_size: Size of each batch

        Yields:
            Lists of rows
        """
        rows = self.iter_rows(config)
        while True:
            batch = list(itertools.islice(rows, batch_size))
            if not batch:
                break
            yield batch
            if len(batch) < batch_size:
                break

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.system_type,
            "formats": list(self.supported_formats),
        }

    def add_error(
        self,
        message: str,
        row: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Add an error to the extraction."""
        error = {
            "message": message,
            "row": row,
            "timestamp": utcnow().isoformat(),
        }
        if details:
            error.update(details)
        self._errors.append(error)
        logger.error(f"Extraction error ({self.name}): {message}")

    def add_warning(self, message: str) -> None:
        """Add a warning to the extraction."""
        self._warnings.append(message)
        logger.warning(f"Extraction warning ({self.name}): {message}")

    def get_extraction_result(self, rows: List[Dict[str, Any]]) -> ExtractionResult:
        """Create an ExtractionResult from extracted rows."""
        return ExtractionResult(
            connector=self.name,
            rows=rows,
            total_extracted=len(rows),
            errors=self._errors.copy(),
            warnings=self._warnings.copy(),
        )

    def reset(self) -> None:
        """Reset the connector state."""
        self._errors = []
        self._warnings = []


class ConnectorRegistry:
    """Connectors available to the orchestrator, by name."""

    def __init__(self):
        self._connectors: Dict[str, SourceConnector] = {}

    def register(self, connector: SourceConnector) -> None:
        if not connector.name:
            raise ValueError("Connector must have a name")
        self._connectors[connector.name] = connector
        logger.debug(f"Registered connector: {connector.name}")

    def get(self, name: str) -> SourceConnector:
        """Get a connector by name."""
        connector = self._connectors.get(name)
        if connector is None:
            raise ConnectorError(f"Unknown source connector: {name}", connector=name)
        return connector

    def __contains__(self, name: str) -> bool:
        return name in self._connectors

    def names(self) -> List[str]:
        return sorted(self._connectors)

    def describe(self) -> List[Dict[str, Any]]:
        return [self._connectors[name].describe() for name in self.names()]
