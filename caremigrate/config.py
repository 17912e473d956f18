"""Engine configuration."""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError

QUALITY_GATE_MODES = ("advisory", "blocking")

DEFAULT_IDENTIFIER_FIELDS = ["resident_id", "patient_id", "client_id"]


@dataclass
class EngineConfig:
    """Configuration for the migration engine."""

    # Storage
    data_dir: str = "./data"
    backup_dir: str = "./backups"

    # Backups
    backup_encryption_key: Optional[str] = None
    compression_level: int = 6
    pbkdf2_iterations: int = 200_000
    default_retention_days: int = 7

    # Execution
    batch_size: int = 100
    phase_timeout_seconds: float = 3600.0
    phase_timeouts: Dict[str, float] = field(default_factory=dict)  # Phase value -> seconds
    max_extract_retries: int = 3
    sample_size: int = 20

    # Quality
    quality_gate: str = "advisory"  # advisory or blocking
    quality_sample_size: int = 100
    date_consistency_sample_size: int = 50
    identifier_fields: List[str] = field(default_factory=lambda: list(DEFAULT_IDENTIFIER_FIELDS))

    def __post_init__(self):
        if self.quality_gate not in QUALITY_GATE_MODES:
            raise ConfigurationError(
                f"quality_gate must be one of {QUALITY_GATE_MODES}, got {self.quality_gate!r}"
            )
        if self.batch_size <= 0:
            raise ConfigurationError("batch_size must be positive")
        if not 1 <= self.compression_level <= 9:
            raise ConfigurationError("compression_level must be between 1 and 9")

    def timeout_for(self, phase: str) -> float:
        """Get the timeout in seconds for a phase."""
        return float(self.phase_timeouts.get(phase, self.phase_timeout_seconds))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (the encryption key is never included)."""
        return {
            "data_dir": self.data_dir,
            "backup_dir": self.backup_dir,
            "encryption_configured": bool(self.backup_encryption_key),
            "compression_level": self.compression_level,
            "pbkdf2_iterations": self.pbkdf2_iterations,
            "default_retention_days": self.default_retention_days,
            "batch_size": self.batch_size,
            "phase_timeout_seconds": self.phase_timeout_seconds,
            "phase_timeouts": self.phase_timeouts,
            "max_extract_retries": self.max_extract_retries,
            "sample_size": self.sample_size,
            "quality_gate": self.quality_gate,
            "quality_sample_size": self.quality_sample_size,
            "date_consistency_sample_size": self.date_consistency_sample_size,
            "identifier_fields": self.identifier_fields,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create from dictionary representation."""
        return cls(
            data_dir=data.get("data_dir", "./data"),
            backup_dir=data.get("backup_dir", "./backups"),
            backup_encryption_key=data.get("backup_encryption_key"),
            compression_level=data.get("compression_level", 6),
            pbkdf2_iterations=data.get("pbkdf2_iterations", 200_000),
            default_retention_days=data.get("default_retention_days", 7),
            batch_size=data.get("batch_size", 100),
            phase_timeout_seconds=data.get("phase_timeout_seconds", 3600.0),
            phase_timeouts=data.get("phase_timeouts", {}),
            max_extract_retries=data.get("max_extract_retries", 3),
            sample_size=data.get("sample_size", 20),
            quality_gate=data.get("quality_gate", "advisory"),
            quality_sample_size=data.get("quality_sample_size", 100),
            date_consistency_sample_size=data.get("date_consistency_sample_size", 50),
            identifier_fields=data.get("identifier_fields", list(DEFAULT_IDENTIFIER_FIELDS)),
        )

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "EngineConfig":
        """Create from CAREMIGRATE_* environment variables."""
        env = os.environ if environ is None else environ
        data: Dict[str, Any] = {}

        if env.get("CAREMIGRATE_DATA_DIR"):
            data["data_dir"] = env["CAREMIGRATE_DATA_DIR"]
        if env.get("CAREMIGRATE_BACKUP_DIR"):
            data["backup_dir"] = env["CAREMIGRATE_BACKUP_DIR"]
        if env.get("CAREMIGRATE_BACKUP_KEY"):
            data["backup_encryption_key"] = env["CAREMIGRATE_BACKUP_KEY"]
        if env.get("CAREMIGRATE_QUALITY_GATE"):
            data["quality_gate"] = env["CAREMIGRATE_QUALITY_GATE"].lower()

        try:
            if env.get("CAREMIGRATE_BATCH_SIZE"):
                data["batch_size"] = int(env["CAREMIGRATE_BATCH_SIZE"])
            if env.get("CAREMIGRATE_PHASE_TIMEOUT"):
                data["phase_timeout_seconds"] = float(env["CAREMIGRATE_PHASE_TIMEOUT"])
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}")

        return cls.from_dict(data)
