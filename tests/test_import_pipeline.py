"""Tests for the three-phase bulk import pipeline."""
import threading
from fractions import Fraction

import pytest
from sqlalchemy.exc import OperationalError

from notetree_mcp.exceptions import (
    ImportAbortedError,
    ProjectLockedError,
    ValidationError,
)
from notetree_mcp.models.schema import ImportRecord, Node
from notetree_mcp.services.import_pipeline import (
    BulkImportPipeline,
    flatten_import_payload,
    order_relink_group,
)
from notetree_mcp.services.import_status import ImportStatusRegistry
from notetree_mcp.services.reorganize_service import ReorganizeService
from scripts.create_sample_import import build_payload
from tests.conftest import PROJECT_ID, child_ids, child_orders
from tests.fakes import BrokenPutStore, FlakyStore, SlowPutStore


def _content(service, parent_id=None):
    return [n.content for n in service.store.get_siblings(PROJECT_ID, parent_id)]


def _pipeline_over(store, service, status_registry, **kwargs):
    """Pipeline whose service writes through ``store``."""
    wrapped = ReorganizeService(store, projects=service.projects)
    options = dict(batch_size=10, max_workers=4, relink_batch_size=5, retry_delay=0, timeout=10)
    options.update(kwargs)
    return BulkImportPipeline(wrapped, status=status_registry, **options)


class CancellingStore(FlakyStore):
    """Sets ``event`` once ``after`` single-node writes have happened."""

    def __init__(self, inner, event, after):
        super().__init__(inner)
        self.event = event
        self.after = after
        self.writes = 0
        self._count_lock = threading.Lock()

    def put(self, node: Node) -> Node:
        stored = self.inner.put(node)
        with self._count_lock:
            self.writes += 1
            if self.writes >= self.after:
                self.event.set()
        return stored


class TestFlattenPayload:
    """Tests for accepting the supported payload shapes."""

    def test_bare_list(self):
        records, meta = flatten_import_payload([{"id": "a"}, {"id": "b"}])
        assert [r["id"] for r in records] == ["a", "b"]
        assert meta is None

    def test_object_with_project(self):
        records, meta = flatten_import_payload(
            {"project": {"name": "Imported"}, "notes": [{"id": "a"}]}
        )
        assert len(records) == 1
        assert meta == {"name": "Imported"}

    def test_nested_children_inherit_parent(self):
        records, _ = flatten_import_payload(
            [{"id": "a", "children": [{"id": "b", "children": [{"id": "c"}]}, {"id": "d"}]}]
        )
        assert [(r["id"], r.get("externalParentId")) for r in records] == [
            ("a", None),
            ("b", "a"),
            ("c", "b"),
            ("d", "a"),
        ]
        assert all("children" not in r for r in records)

    def test_explicit_parent_wins(self):
        records, _ = flatten_import_payload(
            [{"id": "a", "children": [{"id": "b", "parentId": "z"}]}]
        )
        assert records[1]["parentId"] == "z"
        assert "externalParentId" not in records[1]

    def test_non_objects_passed_through(self):
        records, _ = flatten_import_payload([{"id": "a"}, "junk", 42])
        assert records[1:] == ["junk", 42]

    @pytest.mark.parametrize("payload", [{"title": "no notes"}, "text", 7, None])
    def test_rejects_unusable_payload(self, payload):
        with pytest.raises(ValidationError):
            flatten_import_payload(payload)


class TestOrderRelinkGroup:
    """Tests for ordering the children of one parent."""

    def test_hints_used_when_complete(self):
        records = [
            ImportRecord(external_id="a", order_hint=Fraction(2), position=0),
            ImportRecord(external_id="b", order_hint=Fraction(1), position=1),
        ]
        assert [r.external_id for r in order_relink_group(records)] == ["b", "a"]

    def test_position_used_when_hints_partial(self):
        records = [
            ImportRecord(external_id="a", order_hint=Fraction(2), position=1),
            ImportRecord(external_id="b", position=0),
        ]
        assert [r.external_id for r in order_relink_group(records)] == ["b", "a"]


class TestImportRun:
    """End-to-end imports against a real store."""

    def test_reconstructs_depth_three(self, service, pipeline):
        records = [
            {"externalId": "a", "content": "A"},
            {"externalId": "b", "externalParentId": "a", "content": "B"},
            {"externalId": "c", "externalParentId": "b", "content": "C"},
            {"externalId": "d", "externalParentId": "a", "content": "D"},
        ]

        result = pipeline.run(PROJECT_ID, records)

        assert result.succeeded == 4
        assert result.failed == 0
        assert result.relinked == 3
        assert result.cancelled is False
        a_id, b_id = result.id_map["a"], result.id_map["b"]
        assert _content(service) == ["A"]
        assert _content(service, a_id) == ["B", "D"]
        assert _content(service, b_id) == ["C"]
        assert child_orders(service, a_id) == [0, 1]

    def test_appends_after_existing_roots(self, service, pipeline):
        service.create_node(PROJECT_ID, content="existing")
        pipeline.run(PROJECT_ID, [{"id": "x", "content": "X"}, {"id": "y", "content": "Y"}])
        assert _content(service) == ["existing", "X", "Y"]
        assert child_orders(service) == [0, 1, 2]

    def test_hundred_records_with_malformed(self, service, pipeline):
        """Roots n0..n9; n10..n99 hang under n(i % 10); five records are broken."""
        malformed = {15, 35, 55, 75, 95}
        records = []
        for i in range(100):
            if i in malformed:
                records.append({"content": f"broken {i}"})
            else:
                records.append(
                    {
                        "id": f"n{i}",
                        "parentId": f"n{i % 10}" if i >= 10 else None,
                        "content": f"note {i}",
                    }
                )

        result = pipeline.run(PROJECT_ID, records)

        assert result.total == 100
        assert result.succeeded == 95
        assert result.failed == 5
        assert len(result.failures) == 5
        assert result.relinked == 85
        assert result.normalized_groups == 11
        assert _content(service) == [f"note {i}" for i in range(10)]
        assert child_orders(service) == list(range(10))
        n1 = result.id_map["n1"]
        assert _content(service, n1) == [f"note {i}" for i in range(11, 100, 10)]
        assert child_orders(service, n1) == list(range(9))
        assert len(service.store.list_project(PROJECT_ID)) == 95

        status = pipeline.get_status(result.import_id)
        assert status["phase"] == "completed"
        assert status["progress"] == 100

    def test_hints_order_children(self, service, pipeline):
        records = [
            {"id": "p", "content": "P"},
            {"id": "c1", "parentId": "p", "order": 2, "content": "second"},
            {"id": "c2", "parentId": "p", "order": 1, "content": "first"},
        ]
        result = pipeline.run(PROJECT_ID, records)
        assert _content(service, result.id_map["p"]) == ["first", "second"]

    def test_legacy_aliases(self, service, pipeline):
        records = [
            {"id": 1, "content": "Root", "youtube_url": "https://y.example/v", "time_set": "1:02"},
            {"id": 2, "parent_id": 1, "content": "Child", "url_display_text": "link"},
        ]
        result = pipeline.run(PROJECT_ID, records)

        root = service.store.get(result.id_map["1"])
        assert root.youtube_link == "https://y.example/v"
        assert root.url is None
        assert root.time_marker == "1:02"
        child = service.store.get(result.id_map["2"])
        assert child.parent_id == root.id
        assert child.link_text == "link"

    def test_nested_payload(self, service, pipeline):
        records, _ = flatten_import_payload(
            {"notes": [{"id": "a", "content": "A", "children": [{"id": "b", "content": "B"}]}]}
        )
        result = pipeline.run(PROJECT_ID, records)
        assert _content(service, result.id_map["a"]) == ["B"]

    def test_cyclic_references(self, service, pipeline):
        records = [
            {"id": "x", "parentId": "y", "content": "X"},
            {"id": "y", "parentId": "x", "content": "Y"},
        ]

        result = pipeline.run(PROJECT_ID, records)

        assert result.succeeded == 2
        assert result.relinked == 1
        assert result.relink_failed == 1
        # The first relink wins; the second would close the loop
        assert _content(service) == ["Y"]
        assert _content(service, result.id_map["y"]) == ["X"]

    def test_self_parent(self, service, pipeline):
        result = pipeline.run(PROJECT_ID, [{"id": "s", "parentId": "s", "content": "S"}])
        assert result.relink_failed == 1
        assert _content(service) == ["S"]

    def test_unresolved_parent_left_at_root(self, service, pipeline):
        result = pipeline.run(PROJECT_ID, [{"id": "a", "parentId": "elsewhere", "content": "A"}])
        assert result.unresolved == 1
        assert result.failed == 0
        assert result.relink_failed == 0
        assert _content(service) == ["A"]

    def test_duplicate_external_id(self, service, pipeline):
        result = pipeline.run(
            PROJECT_ID, [{"id": "a", "content": "first"}, {"id": "a", "content": "second"}]
        )
        assert result.succeeded == 1
        assert result.failed == 1
        assert _content(service) == ["first"]

    def test_empty_import(self, service, pipeline):
        result = pipeline.run(PROJECT_ID, [])
        assert result.total == 0
        assert result.succeeded == 0
        assert pipeline.get_status(result.import_id)["completed"] is True

    def test_generated_sample_payload(self, service, pipeline):
        records, meta = flatten_import_payload(
            build_payload(count=60, malformed=3, max_depth=4, seed=7)
        )

        result = pipeline.run(PROJECT_ID, records)

        assert meta["name"] == "Sample import (60 notes)"
        assert result.succeeded == 57
        assert result.failed == 3
        assert result.relink_failed == 0
        report = service.normalizer.normalize_project(PROJECT_ID)
        assert report.writes == 0

    def test_locked_project(self, project_repository, pipeline):
        project_repository.set_locked(PROJECT_ID, True)
        with pytest.raises(ProjectLockedError):
            pipeline.run(PROJECT_ID, [{"id": "a"}])
        with pytest.raises(ProjectLockedError):
            pipeline.start(PROJECT_ID, [{"id": "a"}])


class TestImportFailures:
    """Retry, abort and cancellation behaviour."""

    RECORDS = [
        {"id": "p", "content": "P"},
        {"id": "c1", "parentId": "p", "content": "c1"},
        {"id": "c2", "parentId": "p", "content": "c2"},
    ]

    def test_transient_relink_failures_are_retried(
        self, node_repository, service, status_registry
    ):
        flaky = FlakyStore(node_repository, put_many_failures=2)
        pipeline = _pipeline_over(flaky, service, status_registry)

        result = pipeline.run(PROJECT_ID, self.RECORDS)

        assert flaky.put_many_failed == 2
        assert result.relinked == 2
        assert result.relink_failed == 0
        assert _content(service, result.id_map["p"]) == ["c1", "c2"]

    def test_exhausted_retries_leave_nodes_at_root(
        self, node_repository, service, status_registry
    ):
        flaky = FlakyStore(node_repository, fail_put_many_forever=True)
        pipeline = _pipeline_over(flaky, service, status_registry, max_attempts=3)

        result = pipeline.run(PROJECT_ID, self.RECORDS)

        assert flaky.put_many_calls == 3
        assert result.relinked == 0
        assert result.relink_failed == 2
        assert result.succeeded == 3
        assert _content(service) == ["P", "c1", "c2"]

    def test_permanent_failure_is_not_retried(
        self, node_repository, service, status_registry
    ):
        flaky = FlakyStore(node_repository, fail_put_many_forever=True, permanent=True)
        pipeline = _pipeline_over(flaky, service, status_registry, max_attempts=3)

        result = pipeline.run(PROJECT_ID, self.RECORDS)

        assert flaky.put_many_calls == 1
        assert result.relink_failed == 2

    def test_unreachable_store_aborts(self, node_repository, service, status_registry):
        flaky = FlakyStore(node_repository)
        flaky.fail_get_siblings = True
        pipeline = _pipeline_over(flaky, service, status_registry)

        with pytest.raises(ImportAbortedError) as exc_info:
            pipeline.run(PROJECT_ID, self.RECORDS)

        status = status_registry.get(exc_info.value.import_id)
        assert status["phase"] == "failed"
        assert node_repository.list_project(PROJECT_ID) == []

    def test_cancel_stops_between_batches(self, node_repository, service, status_registry):
        event = threading.Event()
        store = CancellingStore(node_repository, event, after=10)
        pipeline = _pipeline_over(store, service, status_registry, batch_size=10)
        records = [{"id": f"r{i}", "content": f"r{i}"} for i in range(30)]

        result = pipeline.run(PROJECT_ID, records, cancel_event=event)

        assert result.cancelled is True
        assert result.succeeded == 10
        assert pipeline.get_status(result.import_id)["phase"] == "cancelled"
        # Whatever was created is still normalized
        assert child_orders(service) == list(range(10))

    @pytest.mark.slow
    def test_background_import(self, service, pipeline):
        import_id = pipeline.start(PROJECT_ID, self.RECORDS)

        status = pipeline.wait(import_id, timeout=10)

        assert status["completed"] is True
        assert status["phase"] == "completed"
        assert status["result"]["relinked"] == 2
        assert pipeline.cancel(import_id) is False
        assert len(child_ids(service)) == 1

    def test_cancel_unknown_import(self, pipeline):
        assert pipeline.cancel("nope") is False

    @pytest.mark.slow
    def test_slow_create_is_awaited_and_counted(self, node_repository, service, status_registry):
        store = SlowPutStore(node_repository, slow=["slow"], delay=0.6)
        pipeline = _pipeline_over(store, service, status_registry, timeout=0.2)
        records = [
            {"id": "a", "content": "fast"},
            {"id": "b", "parentId": "a", "content": "slow"},
        ]

        result = pipeline.run(PROJECT_ID, records)

        assert result.succeeded == 2
        assert result.failed == 0
        assert len(node_repository.list_project(PROJECT_ID)) == 2
        assert result.relinked == 1
        assert _content(service, result.id_map["a"]) == ["slow"]
        log = status_registry.get(result.import_id)["status_log"]
        assert any("still running" in line for line in log)

    def test_project_store_errors_fail_records(
        self, project_repository, node_repository, pipeline, status_registry, monkeypatch
    ):
        import_id = status_registry.create(PROJECT_ID)

        def busy_session():
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        monkeypatch.setattr(project_repository, "session_factory", busy_session)

        result = pipeline.run(PROJECT_ID, self.RECORDS, import_id=import_id)

        assert result.succeeded == 0
        assert result.failed == 3
        assert all("Storage busy" in failure for failure in result.failures)
        assert status_registry.get(import_id)["phase"] == "completed"
        assert node_repository.list_project(PROJECT_ID) == []

    def test_unexpected_error_marks_import_failed(
        self, node_repository, service, status_registry
    ):
        pipeline = _pipeline_over(BrokenPutStore(node_repository), service, status_registry)
        import_id = status_registry.create(PROJECT_ID)

        with pytest.raises(RuntimeError):
            pipeline.run(PROJECT_ID, self.RECORDS, import_id=import_id)

        status = status_registry.get(import_id)
        assert status["phase"] == "failed"
        assert status["completed"] is True
        assert "driver crashed" in status["error"]

    @pytest.mark.slow
    def test_expired_background_handles_are_forgotten(self, service):
        pipeline = BulkImportPipeline(
            service, status=ImportStatusRegistry(retention=0), retry_delay=0, timeout=10
        )
        first = pipeline.start(PROJECT_ID, [{"id": "a", "content": "A"}])
        pipeline.wait(first, timeout=10)

        second = pipeline.start(PROJECT_ID, [{"id": "b", "content": "B"}])
        pipeline.wait(second, timeout=10)

        assert first not in pipeline._handles
        assert _content(service) == ["A", "B"]
