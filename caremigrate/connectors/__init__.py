"""Source connectors for legacy care systems."""

from .base import ConnectorRegistry, ExtractionResult, SourceConnector
from .api_connector import ApiConnector
from .file_connector import FileConnector
from .static import StaticConnector

__all__ = [
    "ConnectorRegistry",
    "ExtractionResult",
    "SourceConnector",
    "ApiConnector",
    "FileConnector",
    "StaticConnector",
]
