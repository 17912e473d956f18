"""Connector over rows already held in memory."""

from typing import Any, Dict, Iterator, List, Optional

from .base import SourceConnector


class StaticConnector(SourceConnector):
    """Serves a fixed list of rows.

    Used for rows decoded by another component (an upload handler, a
    spreadsheet reader) and in tests.
    """

    system_type = "file_based"
    supported_formats = ["json"]

    def __init__(
        self,
        name: str,
        rows: Optional[List[Dict[str, Any]]] = None,
        system_type: Optional[str] = None,
        healthy: bool = True,
        **kwargs,
    ):
        super().__init__(name=name, **kwargs)
        self.rows = list(rows or [])
        if system_type:
            self.system_type = system_type
        self.healthy = healthy

    def extract(self, config: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        rows = config.get("rows", self.rows)
        for row in rows:
            yield dict(row)

    def health_check(self, config: Optional[Dict[str, Any]] = None) -> bool:
        return self.healthy
