"""Pipeline orchestrator - creates pipelines and drives phased execution."""

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import EngineConfig
from .connectors.base import ConnectorRegistry, SourceConnector
from .errors import (
    AlreadyRunningError,
    BackupNotFoundError,
    ConfigurationError,
    ConnectorError,
    InvalidStateTransitionError,
    MigrationError,
    PhaseTimeoutError,
    PipelineNotFoundError,
    QualityGateError,
    RollbackConflictError,
    RollbackFailedError,
)
from .events import EventBus, EventType
from .models.backup import BackupRecord
from .models.pipeline import (
    Pipeline,
    RuleKind,
    SourceSystem,
    TransformationRule,
    ValidationConstraint,
)
from .models.progress import MigrationProgress, Phase, ProgressStatus
from .models.record import ImportResult
from .models.requests import ExecutionOptions, ImportRequest, PipelineRequest
from .services.backup import BackupManager
from .services.field_mapper import FieldMapper, MappingReport, mapping_to_rule
from .services.importer import Importer, ImportSession
from .services.progress import ProgressTracker
from .services.quality import QualityAssessor, QualityReport
from .services.source_analyzer import SourceAnalyzer
from .services.transformer import DictLookupProvider, LookupProvider, RuleEngine
from .services.validators import ConstraintValidator, RecordValidator
from .storage import PIPELINES, JsonFileStore, KeyValueStore
from .targets.base import TargetSink
from .targets.memory import InMemoryTarget
from .timeutil import utcnow

logger = logging.getLogger(__name__)

AMENDABLE_RULE_FIELDS = (
    "source_field",
    "target_field",
    "kind",
    "description",
    "validation_rules",
    "confidence",
    "recommended",
    "parameters",
)


@dataclass
class _RunContext:
    """State carried between the phases of one execution."""
    pipeline: Pipeline
    options: ExecutionOptions
    run_id: str
    correlation_id: str
    backup: Optional[BackupRecord] = None
    extracted: List[Tuple[SourceSystem, List[Dict[str, Any]]]] = field(default_factory=list)
    source_quality: Optional[QualityReport] = None
    target_quality: Optional[QualityReport] = None
    sessions: Dict[str, ImportSession] = field(default_factory=dict)
    accepted: List[Dict[str, Any]] = field(default_factory=list)
    result: Optional[ImportResult] = None
    phase_errors: int = 0

    @property
    def total_rows(self) -> int:
        return sum(len(rows) for _, rows in self.extracted)


def _field_names(rows: List[Dict[str, Any]]) -> List[str]:
    names: List[str] = []
    for row in rows:
        for name in row:
            if name not in names:
                names.append(name)
    return names


def _merge_results(results: List[ImportResult], dry_run: bool) -> ImportResult:
    merged = ImportResult(dry_run=dry_run)
    for result in results:
        merged.records_imported += result.records_imported
        merged.records_skipped += result.records_skipped
        merged.errors.extend(result.errors)
        merged.warnings.extend(result.warnings)
        for action in result.recommended_actions:
            if action not in merged.recommended_actions:
                merged.recommended_actions.append(action)
    if results:
        merged.quality_score = results[0].quality_score
        merged.quality_issues = list(results[0].quality_issues)
    return merged


class PipelineOrchestrator:
    """
    Orchestrates care data migration pipelines.

    Handles:
    - Pipeline creation (source analysis, strategy, rule assembly)
    - Five-phase execution: Backup, ValidateSource, Transform, ValidateTarget, Finalize
    - Cooperative pause/resume between phases
    - Explicit rollback from the latest verified backup
    - Progress tracking and event publication
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[KeyValueStore] = None,
        target: Optional[TargetSink] = None,
        registry: Optional[ConnectorRegistry] = None,
        events: Optional[EventBus] = None,
        lookup_provider: Optional[LookupProvider] = None,
        mapper: Optional[FieldMapper] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Engine configuration
            store: Keyed store for pipelines, progress and the backup index
            target: Platform-side sink rows are written to
            registry: Source connectors by name
            events: Event bus for notifications
            lookup_provider: Reference tables for lookup rules
            mapper: Field mapper used for suggestions
        """
        self.config = config or EngineConfig()
        self.store = store or JsonFileStore(self.config.data_dir)
        self.target = target or InMemoryTarget()
        self.registry = registry or ConnectorRegistry()
        self.events = events or EventBus()
        self.lookups = lookup_provider or DictLookupProvider()
        self.mapper = mapper or FieldMapper()

        self.progress = ProgressTracker(self.store, self.events)
        self.backups = BackupManager(
            self.store,
            self.target,
            self.config.backup_dir,
            encryption_key=self.config.backup_encryption_key,
            pbkdf2_iterations=self.config.pbkdf2_iterations,
            compression_level=self.config.compression_level,
        )
        self.quality = QualityAssessor(
            sample_size=self.config.quality_sample_size,
            date_sample_size=self.config.date_consistency_sample_size,
            identifier_fields=list(self.config.identifier_fields),
        )
        self.analyzer = SourceAnalyzer()

        # Runtime state
        self._active: Set[str] = set()
        self._active_lock = threading.Lock()
        self._resume_gates: Dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> int:
        """
        Load persisted progress and fail runs interrupted by a restart.

        Returns:
            Number of interrupted runs marked failed
        """
        interrupted = self.progress.load_all(status=[ProgressStatus.RUNNING, ProgressStatus.PAUSED])
        for record in interrupted:
            if self.is_running(record.pipeline_id):
                continue
            logger.warning(f"Pipeline {record.pipeline_id} was {record.status.value} at shutdown; marking failed")
            self.progress.set_status(
                record.pipeline_id,
                ProgressStatus.FAILED,
                message="Migration interrupted by engine restart; rollback or re-run required",
            )
            self.events.emit(
                EventType.MIGRATION_FAILED,
                record.pipeline_id,
                error="Migration interrupted by engine restart",
                correlation_id=record.correlation_id,
            )
        logger.info(f"Orchestrator initialized ({len(interrupted)} interrupted run(s) failed)")
        return len(interrupted)

    def shutdown(self) -> None:
        """Flush progress records and close the store."""
        self.progress.flush()
        self.store.close()
        logger.info("Orchestrator shut down")

    # ------------------------------------------------------------------
    # Pipeline definitions
    # ------------------------------------------------------------------

    def _save_pipeline(self, pipeline: Pipeline) -> None:
        self.store.put(PIPELINES, pipeline.pipeline_id, pipeline.to_dict())

    def get_pipeline(self, pipeline_id: str) -> Pipeline:
        data = self.store.get(PIPELINES, pipeline_id)
        if data is None:
            raise PipelineNotFoundError(pipeline_id)
        return Pipeline.from_dict(data)

    def list_pipelines(self, status: Optional[Any] = None) -> List[Pipeline]:
        """List pipelines, optionally only those whose progress has the given status(es)."""
        if status is None:
            pipelines = [Pipeline.from_dict(d) for d in self.store.list(PIPELINES)]
        else:
            pipelines = []
            for record in self.progress.load_all(status=status):
                data = self.store.get(PIPELINES, record.pipeline_id)
                if data is not None:
                    pipelines.append(Pipeline.from_dict(data))
        return sorted(pipelines, key=lambda p: p.created_at)

    def get_progress(self, pipeline_id: str) -> MigrationProgress:
        """Get a snapshot of a pipeline's progress."""
        return MigrationProgress.from_dict(self.progress.require(pipeline_id).to_dict())

    def _connector_for(self, source: SourceSystem) -> SourceConnector:
        return self.registry.get(source.connector or source.system_name)

    async def create_pipeline(self, request: PipelineRequest) -> Pipeline:
        """
        Create a migration pipeline without executing it.

        Args:
            request: Sources, target, requirements and user guidance

        Returns:
            The persisted Pipeline
        """
        sources = [s.to_source_system() for s in request.sources]
        analysis = self.analyzer.analyze(sources)
        strategy = self.analyzer.design_strategy(
            request.requirements,
            analysis,
            encryption_available=bool(self.config.backup_encryption_key),
        )

        samples: List[Dict[str, Any]] = []
        for source_request, source in zip(request.sources, sources):
            if source_request.sample_rows is not None:
                samples.extend(source_request.sample_rows[:self.config.sample_size])
                continue
            try:
                connector = self._connector_for(source)
                samples.extend(await asyncio.to_thread(connector.sample, source.connection, self.config.sample_size))
            except ConnectorError as e:
                logger.warning(f"Could not sample {source.system_name}: {e}")

        rules = self.analyzer.baseline_rules()
        for entity in analysis.detected_entities:
            rules.extend(self.analyzer.dynamic_rules(entity))

        report = self.mapper.map_fields(samples)
        rules = self._merge_mapped_rules(rules, report)
        consumed = {f for rule in rules for f in rule.input_fields}
        unmapped = [f for f in report.unmapped if f not in consumed]

        if samples:
            baseline = self.quality.assess(samples)
            analysis.data_quality = baseline.score
            logger.info(f"Baseline quality from {len(samples)} sample rows: {baseline.score}")

        preferences = None
        if request.requirements.user_preferences is not None:
            preferences = request.requirements.user_preferences.to_preferences()

        pipeline = Pipeline(
            name=request.name or f"Migration from {', '.join(s.system_name for s in sources)}",
            source_analysis=analysis,
            migration_strategy=strategy,
            sources=sources,
            target=request.target.to_target_system(),
            transformation_rules=rules,
            quality_assurance=self.analyzer.quality_assurance(request.requirements),
            user_experience=self.analyzer.user_experience(request.user_guidance, preferences),
            field_mappings=report.mappings,
            unmapped_fields=unmapped,
        )
        self._save_pipeline(pipeline)
        self.progress.initialize(pipeline.pipeline_id, strategy.estimated_duration)

        logger.info(
            f"Created pipeline {pipeline.pipeline_id} ({pipeline.name}): "
            f"{len(rules)} rules, approach={strategy.approach.value}"
        )
        self.events.emit(
            EventType.PIPELINE_CREATED,
            pipeline.pipeline_id,
            name=pipeline.name,
            rule_count=len(rules),
            approach=strategy.approach.value,
        )
        return pipeline

    @staticmethod
    def _merge_mapped_rules(rules: List[TransformationRule], report: MappingReport) -> List[TransformationRule]:
        """Append mapper suggestions that no existing rule already covers."""
        merged = list(rules)
        covered = {(r.source_field, r.target_field) for r in rules}
        for mapping in report.mappings:
            key = (mapping.source_field, mapping.suggested_target)
            if key in covered:
                continue
            merged.append(mapping_to_rule(mapping))
            covered.add(key)
        return merged

    def amend_rule(self, pipeline_id: str, rule_id: str, **changes: Any) -> TransformationRule:
        """
        Amend a transformation rule between runs.

        Args:
            pipeline_id: Pipeline owning the rule
            rule_id: Rule to amend
            **changes: New values; ``validation_rules`` may be given as labels

        Returns:
            The amended rule

        Raises:
            AlreadyRunningError: If the pipeline is executing
        """
        pipeline = self.get_pipeline(pipeline_id)
        if self.is_running(pipeline_id):
            raise AlreadyRunningError(pipeline_id)

        rule = pipeline.get_rule(rule_id)
        if rule is None:
            raise MigrationError(f"Rule {rule_id} not found in pipeline {pipeline_id}", pipeline_id=pipeline_id)

        data = rule.to_dict()
        for name, value in changes.items():
            if name not in AMENDABLE_RULE_FIELDS:
                raise ConfigurationError(f"Rule field '{name}' cannot be amended")
            if name == "kind":
                value = RuleKind(value).value
            elif name == "validation_rules":
                value = [
                    (ValidationConstraint.from_label(c) if isinstance(c, str) else c).to_dict()
                    for c in value
                ]
            data[name] = value

        amended = TransformationRule.from_dict(data)
        pipeline.transformation_rules = [
            amended if r.rule_id == rule_id else r for r in pipeline.transformation_rules
        ]
        pipeline.updated_at = utcnow()
        self._save_pipeline(pipeline)
        logger.info(f"Amended rule {rule_id} of pipeline {pipeline_id}: {sorted(changes)}")
        return amended

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def is_running(self, pipeline_id: str) -> bool:
        with self._active_lock:
            return pipeline_id in self._active

    def _acquire(self, pipeline_id: str) -> None:
        with self._active_lock:
            if pipeline_id in self._active:
                raise AlreadyRunningError(pipeline_id)
            self._active.add(pipeline_id)

    def _release(self, pipeline_id: str) -> None:
        with self._active_lock:
            self._active.discard(pipeline_id)

    async def execute_pipeline(
        self,
        pipeline_id: str,
        options: Optional[ExecutionOptions] = None,
    ) -> MigrationProgress:
        """
        Execute the five phases of a pipeline.

        Args:
            pipeline_id: Pipeline to execute
            options: Dry run, pause-on-errors and auto-resolve flags

        Returns:
            Final progress snapshot (status completed)

        Raises:
            PipelineNotFoundError: If the pipeline does not exist
            AlreadyRunningError: If an execution is already in flight
            MigrationError: Any phase failure, after the pipeline is marked failed
        """
        options = options or ExecutionOptions()
        pipeline = self.get_pipeline(pipeline_id)
        self._acquire(pipeline_id)
        try:
            return await self._run(pipeline, options)
        finally:
            self._release(pipeline_id)

    async def _run(self, pipeline: Pipeline, options: ExecutionOptions) -> MigrationProgress:
        pipeline_id = pipeline.pipeline_id
        ctx = _RunContext(
            pipeline=pipeline,
            options=options,
            run_id=uuid.uuid4().hex[:12],
            correlation_id=str(uuid.uuid4()),
        )
        gate = asyncio.Event()
        gate.set()
        self._resume_gates[pipeline_id] = gate

        handlers = {
            Phase.BACKUP: self._phase_backup,
            Phase.VALIDATE_SOURCE: self._phase_validate_source,
            Phase.TRANSFORM: self._phase_transform,
            Phase.VALIDATE_TARGET: self._phase_validate_target,
            Phase.FINALIZE: self._phase_finalize,
        }

        self.progress.start_run(pipeline_id, ctx.run_id, ctx.correlation_id)
        logger.info(
            f"Starting migration {pipeline.name} ({pipeline_id}) "
            f"run={ctx.run_id} correlation={ctx.correlation_id} dry_run={options.dry_run}"
        )
        current: Optional[Phase] = None

        try:
            for phase in Phase:
                await self._wait_if_paused(pipeline_id)
                current = phase

                logger.info(f"=== PHASE {phase.index}: {phase.name.replace('_', ' ')} ===")
                self.progress.update(pipeline_id, message=f"Starting: {phase.label}", current_step=phase.label)

                ctx.phase_errors = 0
                started = time.monotonic()
                timeout = self.config.timeout_for(phase.value)
                try:
                    summary = await asyncio.wait_for(handlers[phase](ctx), timeout=timeout)
                except asyncio.TimeoutError:
                    raise PhaseTimeoutError(pipeline_id, phase.value, timeout, ctx.correlation_id)

                self.progress.record_phase_metrics(pipeline_id, phase, time.monotonic() - started)
                self._complete_phase(ctx, phase, summary)

                if (
                    options.pause_on_errors
                    and ctx.phase_errors
                    and phase != Phase.FINALIZE
                    and self.progress.require(pipeline_id).status == ProgressStatus.RUNNING
                ):
                    self._pause_now(pipeline_id, f"Paused after {phase.label.lower()}: {ctx.phase_errors} row error(s)")

            await self._wait_if_paused(pipeline_id)

        except (Exception, asyncio.CancelledError) as e:
            self._fail(ctx, current, e)
            raise
        finally:
            self._resume_gates.pop(pipeline_id, None)

        logger.info("=== MIGRATION COMPLETED ===")
        self.progress.update(
            pipeline_id,
            message="Migration completed successfully",
            status=ProgressStatus.COMPLETED,
            current_step="Migration completed",
            estimated_time_remaining=0,
            completed_at=utcnow(),
        )
        result = ctx.result or ImportResult(dry_run=options.dry_run)
        self.events.emit(
            EventType.MIGRATION_COMPLETED,
            pipeline_id,
            run_id=ctx.run_id,
            records_imported=result.records_imported,
            records_skipped=result.records_skipped,
            dry_run=options.dry_run,
        )
        return self.get_progress(pipeline_id)

    def _complete_phase(self, ctx: _RunContext, phase: Phase, summary: str) -> None:
        pipeline_id = ctx.pipeline.pipeline_id
        result = ctx.result
        changes: Dict[str, Any] = {"total_records": ctx.total_rows}
        if result is not None:
            changes["errors_encountered"] = len(result.errors)
            changes["warnings_encountered"] = len(result.warnings)

        progress = self.progress.advance_phase(pipeline_id, phase, message=f"{phase.label}: {summary}")
        remaining = ctx.pipeline.migration_strategy.estimated_duration * (100 - progress.percent_complete) / 100
        changes["estimated_time_remaining"] = int(round(remaining))
        self.progress.update(pipeline_id, **changes)

    def _fail(self, ctx: _RunContext, phase: Optional[Phase], error: BaseException) -> None:
        pipeline_id = ctx.pipeline.pipeline_id
        if isinstance(error, MigrationError):
            error.pipeline_id = error.pipeline_id or pipeline_id
            error.correlation_id = error.correlation_id or ctx.correlation_id
        message = str(error) or type(error).__name__
        phase_name = phase.value if phase else None

        logger.error(
            f"Migration failed for pipeline {pipeline_id} in phase {phase_name} "
            f"[correlation {ctx.correlation_id}]: {message}"
        )
        self.progress.set_status(
            pipeline_id,
            ProgressStatus.FAILED,
            message=f"Migration failed: {message} (correlation {ctx.correlation_id})",
        )
        self.events.emit(
            EventType.MIGRATION_FAILED,
            pipeline_id,
            error=message,
            error_type=type(error).__name__,
            phase=phase_name,
            run_id=ctx.run_id,
            correlation_id=ctx.correlation_id,
        )

    # Phases

    async def _phase_backup(self, ctx: _RunContext) -> str:
        pipeline = ctx.pipeline
        record = await asyncio.to_thread(
            self.backups.create_backup,
            pipeline.pipeline_id,
            pipeline.migration_strategy.backup_policy,
        )
        ctx.backup = record
        self.events.emit(
            EventType.BACKUP_CREATED,
            pipeline.pipeline_id,
            backup_id=record.backup_id,
            verified=record.verified,
            record_count=record.record_count,
        )
        return f"backup {record.backup_id} created ({record.record_count} records, verified={record.verified})"

    def _extract(self, source: SourceSystem) -> List[Dict[str, Any]]:
        connector = self._connector_for(source)
        if not connector.health_check(source.connection):
            raise ConnectorError(f"Source {source.system_name} failed its health check", connector=connector.name)
        return list(connector.iter_rows(source.connection))

    async def _phase_validate_source(self, ctx: _RunContext) -> str:
        pipeline = ctx.pipeline
        for source in pipeline.sources:
            rows = await asyncio.to_thread(self._extract, source)
            logger.info(f"Extracted {len(rows)} rows from {source.system_name}")
            ctx.extracted.append((source, rows))

        all_rows = [row for _, rows in ctx.extracted for row in rows]
        report = await asyncio.to_thread(self.quality.assess, all_rows)
        ctx.source_quality = report

        threshold = pipeline.quality_assurance.quality_threshold
        if report.score < threshold:
            if self.config.quality_gate == "blocking":
                raise QualityGateError(pipeline.pipeline_id, report.score, threshold)
            logger.warning(
                f"Source quality {report.score} is below threshold {threshold} for pipeline "
                f"{pipeline.pipeline_id}; continuing (advisory quality gate)"
            )
            self.progress.update(
                pipeline.pipeline_id,
                message=f"Quality {report.score} below threshold {threshold} (advisory): {'; '.join(report.issues)}",
            )
        return f"{len(all_rows)} rows from {len(pipeline.sources)} source(s), quality {report.score}"

    def _new_importer(self) -> Importer:
        engine = RuleEngine(lookup_provider=self.lookups, validator=ConstraintValidator())
        validator = RecordValidator(identifier_fields=list(self.config.identifier_fields))
        return Importer(engine, validator, self.target)

    async def _phase_transform(self, ctx: _RunContext) -> str:
        pipeline = ctx.pipeline
        options = ctx.options
        batch_size = self.config.batch_size

        for source, rows in ctx.extracted:
            entity = source.entity or pipeline.target.entity
            session = ctx.sessions.get(entity)
            if session is None:
                session = self._new_importer().start(
                    pipeline.transformation_rules,
                    entity,
                    dry_run=options.dry_run,
                    auto_resolve=options.auto_resolve_conflicts,
                    required_fields=pipeline.quality_assurance.required_fields,
                )
                session.warn_unmapped(pipeline.unmapped_fields)
                ctx.sessions[entity] = session

            for start in range(0, len(rows), batch_size):
                batch = await asyncio.to_thread(session.process, rows[start:start + batch_size])
                ctx.accepted.extend(t.data for t in batch if t.is_valid)
                if ctx.backup is not None and session.written_ids:
                    ctx.backup = await asyncio.to_thread(
                        self.backups.record_writes, ctx.backup.backup_id, entity, session.written_ids
                    )
                processed = sum(s.result.total_rows for s in ctx.sessions.values())
                self.progress.update(pipeline.pipeline_id, records_processed=processed)

        results = [s.finish(ctx.source_quality) for s in ctx.sessions.values()]
        ctx.result = _merge_results(results, options.dry_run)
        ctx.phase_errors = len(ctx.result.errors)
        return (
            f"{ctx.result.records_imported} imported, {ctx.result.records_skipped} skipped"
            f"{' (dry run)' if options.dry_run else ''}"
        )

    async def _phase_validate_target(self, ctx: _RunContext) -> str:
        pipeline = ctx.pipeline
        ctx.target_quality = await asyncio.to_thread(self.quality.assess, ctx.accepted)

        if ctx.options.dry_run:
            return f"dry run, target not checked; transformed quality {ctx.target_quality.score}"

        for entity, session in ctx.sessions.items():
            expected = len(set(session.written_ids))
            stored = await asyncio.to_thread(self.target.count, entity)
            if stored < expected:
                raise MigrationError(
                    f"Target validation failed for {entity}: expected at least {expected} rows, found {stored}",
                    pipeline_id=pipeline.pipeline_id,
                )
            logger.info(f"Target {entity} holds {stored} rows ({expected} written by this run)")
        return f"target verified, transformed quality {ctx.target_quality.score}"

    async def _phase_finalize(self, ctx: _RunContext) -> str:
        pipeline = ctx.pipeline
        result = ctx.result or ImportResult(dry_run=ctx.options.dry_run)
        pipeline.last_import = result.to_dict()
        pipeline.updated_at = utcnow()
        await asyncio.to_thread(self._save_pipeline, pipeline)

        logger.info(
            f"Migration summary for {pipeline.pipeline_id}: {result.records_imported} imported, "
            f"{result.records_skipped} skipped, {len(result.errors)} errors, {len(result.warnings)} warnings"
        )
        for action in result.recommended_actions:
            logger.info(f"  Recommended: {action}")
        return "results stored"

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    async def _wait_if_paused(self, pipeline_id: str) -> None:
        gate = self._resume_gates.get(pipeline_id)
        if gate is not None and not gate.is_set():
            logger.info(f"Pipeline {pipeline_id} paused; waiting for resume")
            await gate.wait()

    def _pause_now(self, pipeline_id: str, message: str) -> None:
        gate = self._resume_gates.get(pipeline_id)
        progress = self.progress.require(pipeline_id)
        if gate is None or progress.status != ProgressStatus.RUNNING:
            raise InvalidStateTransitionError(pipeline_id, progress.status.value, "pause")
        gate.clear()
        self.progress.set_status(pipeline_id, ProgressStatus.PAUSED, message=message)
        self.events.emit(EventType.MIGRATION_PAUSED, pipeline_id, reason=message)
        logger.info(f"Pipeline {pipeline_id}: {message}")

    async def pause(self, pipeline_id: str) -> MigrationProgress:
        """
        Pause a running pipeline at the next phase boundary.

        Raises:
            InvalidStateTransitionError: If the pipeline is not running
        """
        self._pause_now(pipeline_id, "Migration paused by operator")
        return self.get_progress(pipeline_id)

    async def resume(self, pipeline_id: str) -> MigrationProgress:
        """
        Resume a paused pipeline.

        Raises:
            InvalidStateTransitionError: If the pipeline is not paused
        """
        progress = self.progress.require(pipeline_id)
        gate = self._resume_gates.get(pipeline_id)
        if gate is None or progress.status != ProgressStatus.PAUSED:
            raise InvalidStateTransitionError(pipeline_id, progress.status.value, "resume")
        self.progress.set_status(pipeline_id, ProgressStatus.RUNNING, message="Migration resumed")
        gate.set()
        self.events.emit(EventType.MIGRATION_RESUMED, pipeline_id)
        logger.info(f"Pipeline {pipeline_id} resumed")
        return self.get_progress(pipeline_id)

    # ------------------------------------------------------------------
    # Rollback and backups
    # ------------------------------------------------------------------

    async def rollback(self, pipeline_id: str) -> int:
        """
        Revert the rows the pipeline wrote since its latest verified backup.

        Returns:
            Number of records restored

        Raises:
            BackupNotFoundError: If no verified backup exists
            RollbackConflictError: If another pipeline has since written the same rows
            AlreadyRunningError: If the pipeline is executing
            RollbackFailedError: If the restore fails
        """
        self.progress.require(pipeline_id)
        self._acquire(pipeline_id)
        try:
            await asyncio.to_thread(self.backups.rollback_candidate, pipeline_id)

            self.progress.set_status(
                pipeline_id,
                ProgressStatus.RUNNING,
                step="Rolling back migration",
                message="Rolling back migration",
            )
            restored = await asyncio.to_thread(self.backups.restore_from_backup, pipeline_id)
            self.progress.set_status(
                pipeline_id,
                ProgressStatus.ROLLED_BACK,
                step="Migration rolled back successfully",
                message=f"Migration rolled back successfully ({restored} records restored)",
            )
            self.events.emit(EventType.MIGRATION_ROLLED_BACK, pipeline_id, records_restored=restored)
            logger.info(f"Rolled back pipeline {pipeline_id}: {restored} records restored")
            return restored
        except (BackupNotFoundError, RollbackConflictError) as e:
            logger.error(f"Rollback refused for pipeline {pipeline_id}: {e}")
            self.events.emit(EventType.ROLLBACK_FAILED, pipeline_id, error=str(e))
            raise
        except RollbackFailedError as e:
            logger.error(f"Rollback failed for pipeline {pipeline_id}: {e}")
            self.progress.set_status(pipeline_id, ProgressStatus.FAILED, message=f"Rollback failed: {e}")
            self.events.emit(EventType.ROLLBACK_FAILED, pipeline_id, error=str(e))
            raise
        except Exception as e:
            logger.exception(f"Rollback failed for pipeline {pipeline_id}")
            self.progress.set_status(pipeline_id, ProgressStatus.FAILED, message=f"Rollback failed: {e}")
            self.events.emit(EventType.ROLLBACK_FAILED, pipeline_id, error=str(e), error_type=type(e).__name__)
            raise RollbackFailedError(f"Rollback failed: {e}", pipeline_id=pipeline_id) from e
        finally:
            self._release(pipeline_id)

    async def test_backup_restore(self, pipeline_id: str) -> Dict[str, Any]:
        """
        Decode the pipeline's latest verified backup without applying it.

        Raises:
            BackupNotFoundError: If no verified backup exists
        """
        self.progress.require(pipeline_id)
        return await asyncio.to_thread(self.backups.test_restore, pipeline_id)

    def list_backups(self, pipeline_id: Optional[str] = None) -> List[BackupRecord]:
        return self.backups.list_backups(pipeline_id)

    def cleanup_expired_backups(self, now: Optional[datetime] = None) -> int:
        return self.backups.cleanup_expired(now)

    # ------------------------------------------------------------------
    # Connectors, mapping and ad-hoc import
    # ------------------------------------------------------------------

    def available_connectors(self) -> List[Dict[str, Any]]:
        return self.registry.describe()

    async def test_connection(self, connector_name: str, config: Optional[Dict[str, Any]] = None) -> bool:
        """
        Run a connector's health check.

        Raises:
            ConnectorError: If no connector is registered under the name
        """
        connector = self.registry.get(connector_name)
        return await asyncio.to_thread(connector.health_check, config)

    def generate_mappings(self, rows: List[Dict[str, Any]]) -> MappingReport:
        """Suggest field mappings for sample rows."""
        return self.mapper.map_fields(rows[:self.config.sample_size])

    def learn_from_feedback(
        self,
        source_field: str,
        recommended_target: str,
        accepted: bool,
        selected_target: Optional[str] = None,
    ) -> None:
        """Feed a user's verdict on a suggested mapping back into the mapper."""
        self.mapper.learn_from_feedback(source_field, recommended_target, accepted, selected_target)

    async def import_rows(self, request: ImportRequest) -> ImportResult:
        """
        Import already-decoded rows outside a pipeline run.

        With ``auto_mapping`` the rules come from the field mapper; otherwise
        the baseline rules are used.

        Args:
            request: Rows, target entity and import flags

        Returns:
            ImportResult with recommended actions
        """
        rows = request.rows
        if request.auto_mapping:
            report = self.generate_mappings(rows)
            rules = [mapping_to_rule(m) for m in report.mappings]
            unmapped = report.unmapped
        else:
            rules = self.analyzer.baseline_rules()
            consumed = {f for rule in rules for f in rule.input_fields}
            unmapped = [f for f in _field_names(rows) if f not in consumed]

        quality = self.quality.assess(rows)
        importer = self._new_importer()
        return await asyncio.to_thread(
            importer.import_rows,
            rows,
            rules,
            request.target_entity,
            dry_run=request.dry_run,
            auto_resolve=request.auto_resolve_conflicts,
            required_fields=request.required_fields,
            unmapped_fields=unmapped,
            quality=quality,
        )
