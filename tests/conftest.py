"""Shared pytest fixtures for the caremigrate test suite."""

from datetime import date

import pytest

from caremigrate.config import EngineConfig
from caremigrate.connectors.base import ConnectorRegistry
from caremigrate.connectors.static import StaticConnector
from caremigrate.events import EventBus, EventRecorder
from caremigrate.orchestrator import PipelineOrchestrator
from caremigrate.services.validators import ConstraintValidator
from caremigrate.storage import MemoryStore
from caremigrate.targets.memory import InMemoryTarget

TEST_BACKUP_KEY = "test-backup-passphrase"
REFERENCE_DATE = date(2026, 1, 1)


# ---------------------------------------------------------------------------
# Sample legacy rows
# ---------------------------------------------------------------------------
def make_resident_rows():
    """Five legacy resident rows; the fourth has no identifier."""
    return [
        {
            "PatientID": "PCS001",
            "Surname": "Smith",
            "Forename": "John",
            "DOB": "15/03/1940",
            "NHSNumber": "943 476 5919",
            "Postcode": "M1 1AA",
            "PhoneNumber": "0161 123 4567",
            "Medications": "Amlodipine 5mg OD; Simvastatin 20mg ON",
        },
        {
            "PatientID": "PCS002",
            "Surname": "Jones",
            "Forename": "Mary",
            "DOB": "02/11/1935",
            "NHSNumber": "401 023 2137",
            "Postcode": "LS1 4AP",
            "PhoneNumber": "0113 496 0000",
            "Medications": "Donepezil 10mg ON",
        },
        {
            "PatientID": "PCS003",
            "Surname": "Taylor",
            "Forename": "Arthur",
            "DOB": "28/07/1931",
            "NHSNumber": "",
            "Postcode": "B1 1BB",
            "PhoneNumber": "0121 496 0001",
            "Medications": "None known",
        },
        {
            "PatientID": "",
            "Surname": "Brown",
            "Forename": "Edith",
            "DOB": "09/01/1928",
            "NHSNumber": "",
            "Postcode": "CF10 1AA",
            "PhoneNumber": "029 2018 0002",
            "Medications": "Paracetamol 500mg QDS",
        },
        {
            "PatientID": "PCS005",
            "Surname": "Wilson",
            "Forename": "George",
            "DOB": "30/12/1939",
            "NHSNumber": "",
            "Postcode": "EH1 1YZ",
            "PhoneNumber": "0131 496 0003",
            "Medications": "Metformin 500mg BD",
        },
    ]


@pytest.fixture
def resident_rows():
    return make_resident_rows()


@pytest.fixture
def constraint_validator():
    """Constraint validator pinned to a fixed reference date."""
    return ConstraintValidator(today=REFERENCE_DATE)


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------
@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def target():
    return InMemoryTarget()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def recorder(events):
    recorder = EventRecorder()
    events.subscribe(recorder)
    return recorder


@pytest.fixture
def engine_config(tmp_path):
    return EngineConfig(
        data_dir=str(tmp_path / "data"),
        backup_dir=str(tmp_path / "backups"),
        backup_encryption_key=TEST_BACKUP_KEY,
        pbkdf2_iterations=1000,
        batch_size=2,
    )


@pytest.fixture
def registry(resident_rows):
    registry = ConnectorRegistry()
    registry.register(StaticConnector("legacy_pcs", rows=resident_rows))
    return registry


@pytest.fixture
def orchestrator(engine_config, store, target, registry, events, recorder):
    return PipelineOrchestrator(
        config=engine_config,
        store=store,
        target=target,
        registry=registry,
        events=events,
    )
