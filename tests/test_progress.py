"""Tests for caremigrate.services.progress and the progress model."""

import pytest

from caremigrate.errors import MigrationError, PipelineNotFoundError
from caremigrate.events import EventType
from caremigrate.models.progress import MigrationProgress, Phase, ProgressStatus, percent_for
from caremigrate.services.progress import ProgressTracker
from caremigrate.storage import PROGRESS


@pytest.fixture
def tracker(store, events):
    return ProgressTracker(store, events)


class TestPercent:

    @pytest.mark.parametrize("index, expected", [(0, 0), (1, 20), (2, 40), (3, 60), (4, 80), (5, 100)])
    def test_five_phases(self, index, expected):
        assert percent_for(index, 5) == expected

    def test_half_rounds_up(self):
        assert percent_for(1, 8) == 13  # 12.5
        assert percent_for(1, 3) == 33

    def test_no_steps(self):
        assert percent_for(3, 0) == 0

    def test_phase_order(self):
        assert [p.index for p in Phase] == [1, 2, 3, 4, 5]
        assert Phase.TRANSFORM.label == "Transforming data"


class TestProgressTracker:

    def test_initialize(self, tracker, store):
        progress = tracker.initialize("pipe-1", estimated_minutes=45)
        assert progress.status == ProgressStatus.PREPARING
        assert progress.current_step_index == 0
        assert progress.estimated_time_remaining == 45
        assert "Pipeline created successfully" in progress.detailed_log[0]
        assert store.get(PROGRESS, "pipe-1")["status"] == "preparing"

    def test_unknown_pipeline(self, tracker):
        assert tracker.get("missing") is None
        with pytest.raises(PipelineNotFoundError):
            tracker.require("missing")

    def test_update_persists_and_publishes(self, tracker, store, recorder):
        tracker.initialize("pipe-1")
        tracker.start_run("pipe-1", "run-1", "corr-1")
        tracker.advance_phase("pipe-1", Phase.BACKUP)
        tracker.advance_phase("pipe-1", Phase.VALIDATE_SOURCE)

        stored = store.get(PROGRESS, "pipe-1")
        assert stored["current_step_index"] == 2
        assert stored["percent_complete"] == 40
        assert stored["correlation_id"] == "corr-1"

        updates = [e for e in recorder.events if e.type == EventType.PROGRESS_UPDATED]
        assert [e.data["percent_complete"] for e in updates] == [0, 20, 40]

    def test_percent_always_matches_index(self, tracker, recorder):
        tracker.initialize("pipe-1")
        tracker.start_run("pipe-1", "run-1", "corr-1")
        for phase in Phase:
            tracker.update("pipe-1", message=f"Starting: {phase.label}", current_step=phase.label)
            tracker.advance_phase("pipe-1", phase)

        for event in recorder.events:
            if event.type == EventType.PROGRESS_UPDATED:
                assert event.data["percent_complete"] == percent_for(event.data["current_step_index"], 5)

    def test_phase_cannot_move_back(self, tracker):
        tracker.initialize("pipe-1")
        tracker.start_run("pipe-1", "run-1", "corr-1")
        tracker.advance_phase("pipe-1", Phase.TRANSFORM)
        with pytest.raises(MigrationError):
            tracker.advance_phase("pipe-1", Phase.BACKUP)

    def test_new_run_resets_index(self, tracker):
        tracker.initialize("pipe-1")
        tracker.start_run("pipe-1", "run-1", "corr-1")
        tracker.advance_phase("pipe-1", Phase.FINALIZE)
        progress = tracker.start_run("pipe-1", "run-2", "corr-2")
        assert progress.current_step_index == 0
        assert progress.percent_complete == 0
        assert progress.run_id == "run-2"

    def test_terminal_status_sets_completed_at(self, tracker):
        tracker.initialize("pipe-1")
        progress = tracker.set_status("pipe-1", ProgressStatus.COMPLETED, step="Migration completed")
        assert progress.completed_at is not None
        assert progress.is_terminal

    def test_unknown_attribute_rejected(self, tracker):
        tracker.initialize("pipe-1")
        with pytest.raises(AttributeError):
            tracker.update("pipe-1", colour="blue")

    def test_load_all_by_status(self, store, events):
        first = ProgressTracker(store, events)
        first.initialize("pipe-1")
        first.initialize("pipe-2")
        first.set_status("pipe-2", ProgressStatus.RUNNING)

        second = ProgressTracker(store, events)
        running = second.load_all(status=ProgressStatus.RUNNING)
        assert [p.pipeline_id for p in running] == ["pipe-2"]
        assert len(second.load_all(status=["running", "preparing"])) == 2

    def test_phase_metrics(self, tracker):
        tracker.initialize("pipe-1")
        tracker.start_run("pipe-1", "run-1", "corr-1")
        tracker.update("pipe-1", records_processed=10)
        tracker.record_phase_metrics("pipe-1", Phase.TRANSFORM, 1.23456)
        metrics = tracker.get("pipe-1").performance
        assert metrics.phase_durations["transform"] == 1.2346


class TestMigrationProgressModel:

    def test_dict_round_trip_keeps_status_and_times(self):
        progress = MigrationProgress(pipeline_id="pipe-1", status=ProgressStatus.PAUSED)
        progress.log("Paused")
        restored = MigrationProgress.from_dict(progress.to_dict())
        assert restored.status == ProgressStatus.PAUSED
        assert restored.last_update_time == progress.last_update_time
        assert restored.detailed_log == progress.detailed_log
