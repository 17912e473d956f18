"""Tests for caremigrate.events."""

from caremigrate.events import EventBus, EventRecorder, EventType


class TestEventBus:

    def test_emit_reaches_subscribers_in_order(self):
        bus = EventBus()
        seen = []
        bus.subscribe(lambda e: seen.append(("first", e.type)))
        bus.subscribe(lambda e: seen.append(("second", e.type)))

        event = bus.emit(EventType.PIPELINE_CREATED, "pipe-1", name="PCS import")

        assert seen == [("first", EventType.PIPELINE_CREATED), ("second", EventType.PIPELINE_CREATED)]
        assert event.data == {"name": "PCS import"}
        assert event.to_dict()["type"] == "pipeline_created"

    def test_type_filter(self):
        bus = EventBus()
        recorder = EventRecorder()
        bus.subscribe(recorder, event_types=[EventType.MIGRATION_FAILED])

        bus.emit(EventType.PROGRESS_UPDATED, "pipe-1")
        bus.emit(EventType.MIGRATION_FAILED, "pipe-1", error="boom")

        assert recorder.types() == ["migration_failed"]

    def test_unsubscribe(self):
        bus = EventBus()
        recorder = EventRecorder()
        unsubscribe = bus.subscribe(recorder)
        bus.emit(EventType.BACKUP_CREATED, "pipe-1")
        unsubscribe()
        bus.emit(EventType.BACKUP_CREATED, "pipe-1")
        assert len(recorder.events) == 1

    def test_failing_listener_does_not_break_publisher(self):
        bus = EventBus()
        recorder = EventRecorder()

        def broken(event):
            raise RuntimeError("listener down")

        bus.subscribe(broken)
        bus.subscribe(recorder)
        bus.emit(EventType.MIGRATION_COMPLETED, "pipe-1")

        assert recorder.types() == ["migration_completed"]

    def test_recorder_filters_by_pipeline(self):
        recorder = EventRecorder()
        bus = EventBus()
        bus.subscribe(recorder)
        bus.emit(EventType.MIGRATION_PAUSED, "pipe-1")
        bus.emit(EventType.MIGRATION_RESUMED, "pipe-2")
        assert recorder.types("pipe-2") == ["migration_resumed"]
