"""
Export service - starts export jobs and runs them in the background.

A job moves through these steps, each persisted on the job record:

    language-prep -> record-prep -> location-prep -> header-prep
        -> exporting -> archiving [-> encrypting] -> finished

Any error after the job record exists is written to the record as a failed
state; the view tables, work directory and partial artifact are removed.
"""
import logging
import math
import threading
import traceback
from functools import lru_cache
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from dataexport.core.config import settings
from dataexport.core.database import SessionLocal
from dataexport.core.exceptions import (
    ExportCancelledError,
    ExportConfigurationError,
    ExportIntegrityError,
    ExportNotReadyError,
    RowSerializationError,
)
from dataexport.core.task_runner import get_task_runner
from dataexport.export.cells import CellResolver
from dataexport.export.columns import ColumnSchemaBuilder, ExportOptions
from dataexport.export.filters import QueryFilter, normalize_filter
from dataexport.export.finalizer import ExportFinalizer
from dataexport.export.references import Dictionary, LocationCache
from dataexport.export.sinks import ExportLimits, get_format, make_sink
from dataexport.export.view import MaterializedView, RowProjector
from dataexport.models.export_job import ExportStatus, StatusStep
from dataexport.ports.tasks import TaskRunner
from dataexport.registry import Question, RegistryLoader, SchemaRegistry
from dataexport.schemas.export import ExportRequest
from dataexport.services.job_tracker import ROW_ERRORS_LIMIT, ExportJobTracker

logger = logging.getLogger(__name__)

# job_id -> cancellation flag, shared by every service instance in the process
_cancel_events: Dict[str, threading.Event] = {}
_cancel_lock = threading.Lock()


@lru_cache(maxsize=1)
def get_registry() -> SchemaRegistry:
    return RegistryLoader(Path(settings.SCHEMA_REGISTRY_FILE)).load()


def build_options(request: ExportRequest) -> ExportOptions:
    questionnaire = None
    if request.questionnaire is not None:
        try:
            questionnaire = [Question.from_dict(question) for question in request.questionnaire]
        except (KeyError, TypeError, AttributeError) as e:
            raise ExportConfigurationError(f"Invalid questionnaire definition: {e}") from e

    return ExportOptions(
        anonymize_fields=list(request.anonymize_fields),
        field_groups=request.field_groups,
        questionnaire=questionnaire,
        use_db_columns=request.use_db_columns,
        dont_translate_values=request.dont_translate_values,
        use_question_variable=request.use_question_variable,
    )


class ExportService:
    def __init__(
        self,
        db: Session,
        registry: Optional[SchemaRegistry] = None,
        task_runner: Optional[TaskRunner] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        artifact_root: Optional[Path] = None,
        limits: Optional[ExportLimits] = None,
        batch_size: Optional[int] = None,
        location_batch_size: Optional[int] = None,
    ):
        self.db = db
        self.registry = registry or get_registry()
        self.task_runner = task_runner or get_task_runner()
        self.session_factory = session_factory
        self.artifact_root = Path(artifact_root or settings.ARTIFACT_ROOT)
        self.limits = limits or ExportLimits.from_settings()
        self.batch_size = batch_size or settings.EXPORT_BATCH_SIZE
        self.location_batch_size = location_batch_size or settings.EXPORT_LOCATION_BATCH_SIZE

    def start_export(self, request: ExportRequest) -> str:
        """
        Validate the request, create the job record and hand the job to the runner.

        Returns:
            The job id, immediately; the export itself runs in the background.

        Raises:
            ExportConfigurationError: unknown schema, unsupported format,
                malformed filter or a layout that cannot be emitted
        """
        descriptor = self.registry.get(request.schema_name)
        export_format = get_format(request.export_type)
        query_filter = QueryFilter.from_dict(request.filter.model_dump())
        normalized = normalize_filter(descriptor.collection, query_filter, descriptor.scope_query)

        options = build_options(request)
        language_id = request.language_id or settings.EXPORT_DEFAULT_LANGUAGE
        ColumnSchemaBuilder(
            descriptor,
            options,
            Dictionary(self.db, language_id, settings.EXPORT_DEFAULT_LANGUAGE),
            LocationCache(self.db, self.location_batch_size),
            export_format.flat,
        ).validate()

        tracker = ExportJobTracker.create(
            self.db,
            schema_name=descriptor.name,
            collection=descriptor.collection,
            export_format=export_format,
            created_by=request.created_by,
            saved_filter=normalized.raw if settings.EXPORT_SAVE_FILTER else None,
        )
        job_id = tracker.job_id

        with _cancel_lock:
            _cancel_events[job_id] = threading.Event()

        logger.info(f"Export {job_id} queued: {descriptor.name} as {export_format.name}")
        self.task_runner.submit(self.run_export, job_id, request, task_id=job_id)
        return job_id

    def run_export(self, job_id: str, request: ExportRequest) -> None:
        """Background entry point; owns its own database session."""
        db = self.session_factory()
        try:
            try:
                run = ExportRun(
                    db=db,
                    job_id=job_id,
                    request=request,
                    registry=self.registry,
                    artifact_root=self.artifact_root,
                    limits=self.limits,
                    batch_size=self.batch_size,
                    location_batch_size=self.location_batch_size,
                    cancel_event=_cancel_events.get(job_id),
                )
            except Exception as e:
                logger.error(f"Export {job_id} could not start: {e}", exc_info=True)
                db.rollback()
                ExportJobTracker(job_id, db).fail(str(e) or type(e).__name__, traceback.format_exc())
                return
            run.execute()
        finally:
            db.close()
            with _cancel_lock:
                _cancel_events.pop(job_id, None)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; False when the job already finished."""
        tracker = self._tracker(job_id)
        if tracker.job.is_terminal:
            return False

        with _cancel_lock:
            event = _cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Export {job_id}: cancellation requested")
        return True

    def get_status(self, job_id: str) -> Dict:
        return self._tracker(job_id).get_status()

    def artifact_path(self, job_id: str) -> Path:
        job = self._tracker(job_id).job
        if job.status not in (ExportStatus.SUCCESS.value, ExportStatus.SUCCESS_WITH_WARNINGS.value):
            raise ExportNotReadyError(f"Export {job_id} is {job.status}")

        path = Path(job.file_path or "")
        if not job.file_path or not path.exists():
            raise ExportNotReadyError(f"Artifact for export {job_id} is no longer available")
        return path

    def _tracker(self, job_id: str) -> ExportJobTracker:
        tracker = ExportJobTracker.get(self.db, job_id)
        if tracker is None:
            raise LookupError(f"Export job {job_id} not found")
        return tracker


class ExportRun:
    """State of one running export: caches, view, sink and artifact."""

    def __init__(
        self,
        db: Session,
        job_id: str,
        request: ExportRequest,
        registry: SchemaRegistry,
        artifact_root: Path,
        limits: ExportLimits,
        batch_size: int,
        location_batch_size: int,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.db = db
        self.job_id = job_id
        self.request = request
        self.registry = registry
        self.limits = limits
        self.batch_size = batch_size
        self.location_batch_size = location_batch_size
        self.cancel_event = cancel_event or threading.Event()

        self.tracker = ExportJobTracker(job_id, db)
        self.finalizer = ExportFinalizer(artifact_root, job_id)
        self.view: Optional[MaterializedView] = None
        self.sink = None

    def execute(self) -> None:
        try:
            self._run()
        except Exception as e:
            logger.error(f"Export {self.job_id} failed: {e}", exc_info=True)
            self._fail(e, traceback.format_exc())

    def _run(self) -> None:
        request = self.request
        descriptor = self.registry.get(request.schema_name)
        export_format = get_format(request.export_type)
        normalized = normalize_filter(
            descriptor.collection,
            QueryFilter.from_dict(request.filter.model_dump()),
            descriptor.scope_query,
        )
        options = build_options(request)
        self.finalizer.prepare()

        # Language tokens for every header
        self.tracker.update_step(StatusStep.LANGUAGE_PREP)
        dictionary = Dictionary(
            self.db,
            request.language_id or settings.EXPORT_DEFAULT_LANGUAGE,
            settings.EXPORT_DEFAULT_LANGUAGE,
        )
        locations = LocationCache(self.db, self.location_batch_size)
        builder = ColumnSchemaBuilder(descriptor, options, dictionary, locations, export_format.flat)
        locations.include_parents = builder.include_location_data
        dictionary.prefetch(builder.label_tokens())
        self._check_cancelled()

        # One projection pass over the matching records
        self.tracker.update_step(StatusStep.RECORD_PREP)
        counters = builder.counters()
        self.view = MaterializedView(self.db, self.job_id, counters.keys())
        self.view.create()
        total = self.view.populate(
            normalized,
            RowProjector(counters, builder.location_paths()),
            self.batch_size,
        )
        self.tracker.set_total(total)
        self._check_cancelled()

        self.tracker.update_step(StatusStep.LOCATION_PREP)
        locations.resolve(self.view.distinct_location_ids())
        locations.finalize()
        if not options.dont_translate_values:
            dictionary.resolve_missing(locations.geographical_levels())
        self._check_cancelled()

        self.tracker.update_step(StatusStep.HEADER_PREP)
        columns = builder.build(self.view.maxima())
        resolver = CellResolver(
            columns,
            dictionary,
            locations,
            builder.location_fields,
            export_format.flat,
            anonymize_value=settings.EXPORT_ANONYMIZE_VALUE,
            dont_translate_values=options.dont_translate_values,
        )

        self.tracker.update_step(StatusStep.EXPORTING)
        self.sink = make_sink(export_format, self.finalizer.work_dir, self.job_id, self.limits)
        self.sink.begin(columns)
        self._write_rows(total, dictionary, resolver)
        files = self.sink.end()
        self.sink = None

        remaining = self.view.count()
        if remaining:
            raise ExportIntegrityError(f"Not all documents were exported ({remaining} left)")
        self.view.drop()
        self.view = None

        self.tracker.update_step(StatusStep.ARCHIVING)
        path, final_format = self.finalizer.package(files, export_format)
        if request.encryption_passphrase:
            self.tracker.update_step(StatusStep.ENCRYPTING)
            self.finalizer.encrypt(request.encryption_passphrase)
        self.finalizer.discard_work_dir()

        self.tracker.complete(str(path), final_format, path.stat().st_size)

    def _write_rows(self, total: int, dictionary: Dictionary, resolver: CellResolver) -> None:
        processed = 0
        failed = 0
        row_errors: List[Dict] = []

        # The loop is bounded by the projected total; the view must be empty afterwards
        for _ in range(math.ceil(total / self.batch_size)):
            self._check_cancelled()
            batch = self.view.next_batch(self.batch_size)
            if not batch:
                break

            documents = self.view.documents(batch)
            dictionary.resolve_missing(
                resolver.collect_tokens(document for document in documents if document is not None)
            )

            for (_, row_id), document in zip(batch, documents):
                position = processed + failed + 1
                if document is None:
                    failed += 1
                    self._row_error(row_errors, position, row_id, "Record no longer exists")
                    continue
                try:
                    self.sink.write_row(resolver.resolve_row(document))
                    processed += 1
                except RowSerializationError as e:
                    failed += 1
                    self._row_error(row_errors, position, row_id, str(e))

            self.sink.flush()
            self.view.consume([seq for seq, _ in batch])
            self.tracker.set_progress(processed, failed, row_errors)
            logger.debug(f"Export {self.job_id}: {processed + failed}/{total} rows")

        if failed:
            logger.warning(f"Export {self.job_id}: {failed} row(s) could not be written")

    def _row_error(self, row_errors: List[Dict], position: int, record_id: str, message: str) -> None:
        logger.warning(f"Export {self.job_id}: row {position} ({record_id}) skipped: {message}")
        if len(row_errors) < ROW_ERRORS_LIMIT:
            row_errors.append({"row": position, "record_id": record_id, "error": message})

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ExportCancelledError("Export cancelled")

    def _fail(self, error: Exception, stack: str) -> None:
        self.db.rollback()

        if self.sink is not None:
            try:
                self.sink.abort()
            except Exception as e:
                logger.error(f"Export {self.job_id}: could not abort writer: {e}")
        if self.view is not None:
            try:
                self.view.drop()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Export {self.job_id}: could not drop {self.view.name}: {e}")
        try:
            self.finalizer.cleanup()
        except OSError as e:
            logger.error(f"Export {self.job_id}: could not remove files: {e}")

        self.tracker.fail(str(error) or type(error).__name__, stack)
