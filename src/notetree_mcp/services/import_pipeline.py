"""Bulk import of externally identified notes into a project tree.

An import runs in three phases:

1. **Create.** Every record becomes a root node under a new ID, in
   bounded-concurrency batches. The external-to-new ID map is recorded.
2. **Relink.** Records whose external parent resolved in phase 1 are moved
   under their new parent. Relinks are grouped by new parent and each
   group is written serially, in batches, with retries on transient
   storage errors.
3. **Reconcile.** Every group touched in phase 2, plus the root group, is
   normalized once.

Per-record problems never abort the import; they are collected in the
failure log. Only a failure to reach storage before phase 1 aborts.
"""
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from notetree_mcp.config import config
from notetree_mcp.exceptions import (
    ErrorCode,
    ImportAbortedError,
    NormalizationFailure,
    NoteTreeError,
    StorageError,
    TransientStoreError,
    ValidationError,
)
from notetree_mcp.models.order_keys import key_at_tail
from notetree_mcp.models.schema import ImportPhase, ImportRecord, ImportResult, Node
from notetree_mcp.observability import timed_operation
from notetree_mcp.services.import_status import ImportStatusRegistry
from notetree_mcp.services.reorganize_service import ReorganizeService
from notetree_mcp.services.tree_validator import creates_cycle

logger = logging.getLogger(__name__)

# Keys that may hold the record list in an object payload
_PAYLOAD_LIST_KEYS = ("notes", "nodes", "records")


def flatten_import_payload(payload: Any) -> Tuple[List[Any], Optional[Dict[str, Any]]]:
    """Turn an import payload into a flat record list.

    Accepts a bare list of records or an object ``{"project": {...},
    "notes": [...]}``. Nested ``children`` lists are flattened depth-first,
    each child inheriting the enclosing record's ID as its parent unless it
    names a parent itself. Non-object entries are passed through so phase 1
    can report them as malformed.

    Returns:
        The flat records and the payload's project metadata, if any.

    Raises:
        ValidationError: The payload has no record list at all.
    """
    project_meta = None
    if isinstance(payload, Mapping):
        records = next(
            (payload[k] for k in _PAYLOAD_LIST_KEYS if isinstance(payload.get(k), list)),
            None,
        )
        if records is None:
            raise ValidationError(
                "Import payload has no notes list",
                field="notes",
                code=ErrorCode.IMPORT_RECORD_INVALID,
            )
        meta = payload.get("project")
        project_meta = dict(meta) if isinstance(meta, Mapping) else None
    elif isinstance(payload, list):
        records = payload
    else:
        raise ValidationError(
            f"Import payload must be a list or an object, got {type(payload).__name__}",
            code=ErrorCode.IMPORT_RECORD_INVALID,
        )

    flat: List[Any] = []

    def visit(items: Sequence[Any], parent_ref: Any) -> None:
        for item in items:
            if not isinstance(item, Mapping):
                flat.append(item)
                continue
            record = {k: v for k, v in item.items() if k != "children"}
            has_parent = any(
                record.get(k) is not None
                for k in ("externalParentId", "external_parent_id", "parentId", "parent_id")
            )
            if parent_ref is not None and not has_parent:
                record["externalParentId"] = parent_ref
            flat.append(record)
            children = item.get("children")
            if isinstance(children, list) and children:
                own_ref = next(
                    (record[k] for k in ("externalId", "external_id", "id") if record.get(k) is not None),
                    None,
                )
                visit(children, own_ref)

    visit(records, None)
    return flat, project_meta


def order_relink_group(records: Sequence[ImportRecord]) -> List[ImportRecord]:
    """Order the children of one parent for key assignment.

    Uses the external ordering hint when every record in the group has one
    (ties broken by list position), and list position otherwise.
    """
    if records and all(r.order_hint is not None for r in records):
        return sorted(records, key=lambda r: (r.order_hint, r.position))
    return sorted(records, key=lambda r: r.position)


@dataclass
class _ImportRun:
    """Working state of one import."""

    import_id: str
    project_id: str
    cancel_event: threading.Event
    result: ImportResult
    created: Dict[str, Node] = field(default_factory=dict)  # external id -> node
    records: Dict[str, ImportRecord] = field(default_factory=dict)
    external_of: Dict[str, str] = field(default_factory=dict)  # new id -> external id
    parent_of: Dict[str, Optional[str]] = field(default_factory=dict)  # new id -> new parent
    touched_groups: List[Optional[str]] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class BulkImportPipeline:
    """Reconstructs a tree from a flat list of externally identified records."""

    def __init__(
        self,
        service: ReorganizeService,
        status: Optional[ImportStatusRegistry] = None,
        batch_size: Optional[int] = None,
        max_workers: Optional[int] = None,
        relink_batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize the pipeline; unset limits come from config."""
        self.service = service
        self.store = service.store
        self.status = status or ImportStatusRegistry()
        self.batch_size = batch_size or config.import_batch_size
        self.max_workers = max_workers or config.import_max_workers
        self.relink_batch_size = relink_batch_size or config.relink_batch_size
        self.max_attempts = max_attempts or config.relink_max_attempts
        self.retry_delay = config.relink_retry_delay if retry_delay is None else retry_delay
        self.timeout = timeout or config.store_timeout
        self._handles: Dict[str, Tuple[threading.Event, threading.Thread]] = {}
        self._handles_lock = threading.Lock()

    # =========================================================================
    # Public API
    # =========================================================================

    def run(
        self,
        project_id: str,
        records: Sequence[Any],
        import_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ImportResult:
        """Import ``records`` into ``project_id`` and wait for the result.

        Args:
            project_id: Target project.
            records: Raw record dicts (see ``ImportRecord.from_raw``).
            import_id: Handle of a status entry created by :meth:`start`.
                A new entry is registered when None.
            cancel_event: Set to stop at the next batch or group boundary.

        Raises:
            ProjectLockedError: The project is locked.
            NotFoundError: The project does not exist.
            ImportAbortedError: Storage was unreachable before phase 1.

        Any other exception that escapes a phase marks the import failed
        before it propagates.
        """
        records = list(records)
        if import_id is None:
            self.service.ensure_mutable(project_id, "import")
            import_id = self.status.create(project_id, total=len(records))
        else:
            self.status.set_total(import_id, len(records))

        run = _ImportRun(
            import_id=import_id,
            project_id=project_id,
            cancel_event=cancel_event or threading.Event(),
            result=ImportResult(import_id=import_id, project_id=project_id, total=len(records)),
        )
        started = time.monotonic()

        with timed_operation("import_run", project_id=project_id, import_id=import_id) as op:
            try:
                root_base = key_at_tail(
                    n.order for n in self.store.get_siblings(project_id, None)
                )
            except StorageError as e:
                message = f"Import aborted: cannot read project {project_id}: {e.message}"
                logger.error(message)
                self._log(run, message)
                self.status.finish(import_id, ImportPhase.FAILED, error=message)
                raise ImportAbortedError(
                    message, project_id, import_id=import_id, original_error=e
                ) from e

            self._log(run, f"Starting import of {len(records)} notes")
            try:
                self._create_phase(run, records, root_base)
                if not run.cancelled:
                    self._relink_phase(run)
                self._reconcile_phase(run)
            except Exception as e:
                message = f"Import {import_id} failed: {e}"
                logger.error(message, exc_info=True)
                self._log(run, message)
                self.status.finish(import_id, ImportPhase.FAILED, error=str(e))
                raise

            result = run.result
            result.cancelled = run.cancelled
            result.elapsed_seconds = round(time.monotonic() - started, 3)
            result.id_map = {ext: node.id for ext, node in run.created.items()}
            op["succeeded"] = result.succeeded
            op["failed"] = result.failed

        final_phase = ImportPhase.CANCELLED if result.cancelled else ImportPhase.COMPLETED
        self._log(run, result.summary())
        self.status.finish(import_id, final_phase, result=result)
        logger.info(result.summary())
        return result

    def start(self, project_id: str, records: Sequence[Any]) -> str:
        """Run an import on a background thread and return its handle at once.

        The lock check happens before the thread starts, so a locked
        project raises here instead of producing a failed status.
        """
        self.service.ensure_mutable(project_id, "import")
        records = list(records)
        import_id = self.status.create(project_id, total=len(records))
        cancel_event = threading.Event()
        thread = threading.Thread(
            target=self._run_in_background,
            args=(project_id, records, import_id, cancel_event),
            name=f"import-{import_id[:8]}",
            daemon=True,
        )
        with self._handles_lock:
            # Forget finished imports whose status has expired
            self.status.purge_expired()
            for key in [
                k for k, (_, t) in self._handles.items()
                if not t.is_alive() and k not in self.status
            ]:
                del self._handles[key]
            self._handles[import_id] = (cancel_event, thread)
        thread.start()
        logger.info(f"Started background import {import_id} of {len(records)} records")
        return import_id

    def cancel(self, import_id: str) -> bool:
        """Request cooperative cancellation; False if the import is not running."""
        with self._handles_lock:
            handle = self._handles.get(import_id)
        if handle is None or not handle[1].is_alive():
            return False
        handle[0].set()
        self.status.log(import_id, "Cancellation requested")
        logger.info(f"Cancellation requested for import {import_id}")
        return True

    def wait(self, import_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Block until a background import finishes; returns its status."""
        with self._handles_lock:
            handle = self._handles.get(import_id)
        if handle is not None:
            handle[1].join(timeout)
        return self.status.get(import_id)

    def get_status(self, import_id: str) -> Optional[Dict[str, Any]]:
        return self.status.get(import_id)

    # =========================================================================
    # Phases
    # =========================================================================

    def _run_in_background(
        self,
        project_id: str,
        records: List[Any],
        import_id: str,
        cancel_event: threading.Event,
    ) -> None:
        # run() has already marked the status failed; nothing above this
        # thread can observe the exception
        try:
            self.run(project_id, records, import_id=import_id, cancel_event=cancel_event)
        except NoteTreeError as e:
            logger.error(f"Background import {import_id} stopped: {e}")
        except Exception as e:
            logger.error(f"Background import {import_id} crashed: {e}")

    def _log(self, run: _ImportRun, message: str) -> None:
        self.status.log(run.import_id, message)

    def _fail_record(self, run: _ImportRun, message: str) -> None:
        run.result.failed += 1
        run.result.failures.append(message)
        self._log(run, f"Failed: {message}")
        logger.warning(f"Import {run.import_id}: {message}")

    def _parse(self, run: _ImportRun, raw: Any, position: int) -> Optional[ImportRecord]:
        try:
            record = ImportRecord.from_raw(raw, position)
        except ValueError as e:
            self._fail_record(run, f"record #{position}: {e}")
            return None
        if record.external_id in run.records:
            self._fail_record(
                run, f"record #{position}: duplicate external id {record.external_id}"
            )
            return None
        run.records[record.external_id] = record
        return record

    def _create_one(self, project_id: str, record: ImportRecord, order) -> Node:
        return self.service.create_node(
            project_id,
            parent_id=None,
            order=order,
            normalize=False,
            **record.node_attributes(),
        )

    def _create_phase(self, run: _ImportRun, raw_records: List[Any], root_base) -> None:
        total = len(raw_records)
        processed = 0
        self.status.advance(run.import_id, ImportPhase.CREATING, 0, total, processed=0)

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="import-create"
        ) as pool:
            for start in range(0, total, self.batch_size):
                if run.cancelled:
                    self._log(run, f"Phase 1: cancelled after {processed}/{total} notes")
                    break

                batch = raw_records[start:start + self.batch_size]
                futures = []
                for offset, raw in enumerate(batch):
                    position = start + offset
                    record = self._parse(run, raw, position)
                    if record is None:
                        continue
                    # Distinct interim root keys keep list order without coordination
                    order = root_base + position
                    futures.append(
                        (record, pool.submit(self._create_one, run.project_id, record, order))
                    )

                # A submitted create cannot be recalled, so late ones are
                # awaited and counted by their real outcome
                _, late = wait_futures([f for _, f in futures], timeout=self.timeout)
                if late:
                    message = (
                        f"Phase 1: {len(late)} creates still running after "
                        f"{self.timeout}s; waiting for them"
                    )
                    self._log(run, message)
                    logger.warning(f"Import {run.import_id}: {message}")

                for record, future in futures:
                    try:
                        node = future.result()
                    except (NoteTreeError, ValueError) as e:
                        self._fail_record(run, f"record {record.external_id}: {e}")
                        continue
                    run.created[record.external_id] = node
                    run.external_of[node.id] = record.external_id
                    run.parent_of[node.id] = None
                    run.result.succeeded += 1

                processed += len(batch)
                self.status.advance(
                    run.import_id, ImportPhase.CREATING, processed, total, processed=processed
                )
                self._log(run, f"Phase 1: Created {run.result.succeeded}/{total} notes")

    def _plan_relinks(self, run: _ImportRun) -> "OrderedDict[str, List[ImportRecord]]":
        """Group resolvable relinks by new parent, in first-appearance order."""
        groups: "OrderedDict[str, List[ImportRecord]]" = OrderedDict()
        for ext_id, node in run.created.items():
            record = run.records[ext_id]
            parent_ref = record.external_parent_id
            if parent_ref is None:
                continue
            if parent_ref == ext_id:
                self._fail_relink(run, record, "record names itself as parent")
                continue
            parent = run.created.get(parent_ref)
            if parent is None:
                run.result.unresolved += 1
                self._log(
                    run,
                    f"Note {ext_id}: parent {parent_ref} not imported; left at root",
                )
                continue
            groups.setdefault(parent.id, []).append(record)
        return groups

    def _fail_relink(self, run: _ImportRun, record: ImportRecord, reason: str) -> None:
        run.result.relink_failed += 1
        message = f"relink of {record.external_id}: {reason}"
        run.result.failures.append(message)
        self._log(run, f"Warning: {message}; left at root")
        logger.warning(f"Import {run.import_id}: {message}")

    def _write_with_retry(self, nodes: List[Node]) -> Optional[Exception]:
        """Write one relink batch; returns the last error, or None on success."""
        last_error: Optional[Exception] = None
        for attempt in range(self.max_attempts):
            try:
                self.store.put_many(nodes)
                return None
            except TransientStoreError as e:
                last_error = e
                logger.warning(
                    f"Relink batch failed (attempt {attempt + 1}/{self.max_attempts}): {e}"
                )
                if attempt < self.max_attempts - 1:
                    time.sleep(self.retry_delay * (attempt + 1))
            except StorageError as e:
                return e
        return last_error

    def _relink_phase(self, run: _ImportRun) -> None:
        groups = self._plan_relinks(run)
        total = sum(len(g) for g in groups.values())
        done = 0
        self._log(run, f"Phase 2: relinking {total} notes under {len(groups)} parents")
        self.status.advance(run.import_id, ImportPhase.RELINKING, 0, total)

        for parent_id, group in groups.items():
            if run.cancelled:
                self._log(run, f"Phase 2: cancelled after {done}/{total} notes")
                break

            try:
                existing = self.store.get_siblings(run.project_id, parent_id)
            except StorageError as e:
                for record in group:
                    self._fail_relink(run, record, f"could not read parent group: {e.message}")
                done += len(group)
                continue

            accepted: List[Node] = []
            for record in order_relink_group(group):
                node = run.created[record.external_id]
                if creates_cycle(node.id, parent_id, run.parent_of.get):
                    self._fail_relink(run, record, "parent chain would form a cycle")
                    continue
                run.parent_of[node.id] = parent_id
                accepted.append(node)

            next_key = key_at_tail(n.order for n in existing)
            group_relinked = 0
            for start in range(0, len(accepted), self.relink_batch_size):
                batch = [
                    node.model_copy(update={"parent_id": parent_id, "order": next_key + offset})
                    for offset, node in enumerate(
                        accepted[start:start + self.relink_batch_size], start=start
                    )
                ]
                error = self._write_with_retry(batch)
                for moved in batch:
                    ext_id = run.external_of[moved.id]
                    if error is None:
                        run.created[ext_id] = moved
                    else:
                        run.parent_of[moved.id] = None
                        self._fail_relink(run, run.records[ext_id], str(error))
                if error is None:
                    group_relinked += len(batch)
                    run.result.relinked += len(batch)

            if group_relinked:
                run.touched_groups.append(parent_id)
            done += len(group)
            self.status.advance(run.import_id, ImportPhase.RELINKING, done, total)
            self._log(run, f"Phase 2: Processed {done}/{total} notes")

    def _reconcile_phase(self, run: _ImportRun) -> None:
        groups: List[Optional[str]] = [None] + [g for g in run.touched_groups if g is not None]
        self._log(run, f"Normalizing note order for {len(groups)} parent groups")
        for index, parent_id in enumerate(groups, start=1):
            try:
                self.service.normalizer.normalize(run.project_id, parent_id)
                run.result.normalized_groups += 1
            except NormalizationFailure as e:
                self._log(run, f"Warning: {e.message}")
                logger.warning(f"Import {run.import_id}: {e}")
            self.status.advance(run.import_id, ImportPhase.NORMALIZING, index, len(groups))
