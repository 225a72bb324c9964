"""Tests for the declarative step engine."""

import asyncio

import pytest

from docflow.core.exceptions import (
    AuthenticationExpiredError, ConfigurationError, GraphValidationError, StorageError, TransientSourceError,
)
from docflow.core.logging import current_logging_context, reset_logging_context, set_logging_context
from docflow.core.workflow_engine import WorkflowEngine
from docflow.handlers import (
    ComparisonStepHandler, ExtractionStepHandler, NotificationStepHandler, SourceStepHandler,
    StepHandler, StepHandlerRegistry, StorageStepHandler,
)
from docflow.models.core import ConnectionDefinition, ExecutionStatusEnum, StepStatusEnum, StepType, WorkflowConfig

from .conftest import (
    FakeClassifier, FakeExtractor, FakeNotifier, FakePersistence, FakeSource, make_documents, make_workflow, no_sleep,
)

PIPELINE = ["source", "extraction", "comparison", "storage", "notification"]


class StageHandler(StepHandler):
    """Notification-typed handler that records what it saw."""

    step_type = StepType.NOTIFICATION

    def __init__(self):
        self.seen = []

    async def handle(self, step, context):
        self.seen.append(dict(context))
        context["leaked"] = True
        return {"success": True, "stage": step.id, f"visited_{step.id}": True}


def registry_with(notification_handler=None, overrides=None):
    handlers = {
        StepType.SOURCE: SourceStepHandler(FakeSource(make_documents("a.pdf", "b.pdf")), sleep=no_sleep),
        StepType.EXTRACTION: ExtractionStepHandler(FakeClassifier(), FakeExtractor()),
        StepType.COMPARISON: ComparisonStepHandler(),
        StepType.STORAGE: StorageStepHandler(FakePersistence()),
        StepType.NOTIFICATION: notification_handler or NotificationStepHandler(FakeNotifier()),
    }
    handlers.update(overrides or {})
    return StepHandlerRegistry(handlers.values())


class TestWorkflowEngine:
    """Test cases for WorkflowEngine traversal and failure handling."""

    def test_incomplete_handler_table_rejected(self):
        with pytest.raises(ConfigurationError):
            WorkflowEngine(StepHandlerRegistry([NotificationStepHandler(FakeNotifier())]))

    @pytest.mark.asyncio
    async def test_full_pipeline_completes(self, engine, persistence, notifier):
        workflow = make_workflow(PIPELINE, configs={4: {"table": "invoices"}})

        execution = await engine.execute_workflow(workflow)

        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert execution.visited_step_ids == ["s1", "s2", "s3", "s4", "s5"]
        assert all(result.status == StepStatusEnum.COMPLETED for result in execution.step_results)
        assert all(result.end_time is not None for result in execution.step_results)
        assert execution.end_time is not None
        assert execution.errors == []
        assert execution.processed_documents == 3
        assert len(execution.context["extracted_data"]) == 3
        assert execution.context["stored_count"] == 3
        assert persistence.writes[0][0] == "invoices"
        assert notifier.sent[0].documents_extracted == 3
        assert notifier.sent[0].execution_id == execution.id
        assert workflow.run_stats.total_runs == 1
        assert workflow.run_stats.successful_runs == 1
        assert workflow.run_stats.last_run == execution.end_time

    @pytest.mark.asyncio
    async def test_visits_steps_in_connection_order(self, engine):
        workflow = WorkflowConfig(
            id="wf_order",
            name="Out of order",
            steps=[
                {"id": "notify", "type": "notification"},
                {"id": "fetch", "type": "source"},
                {"id": "store", "type": "storage"},
                {"id": "extract", "type": "extraction"},
            ],
            connections=[
                {"id": "c3", "sourceStepId": "store", "targetStepId": "notify"},
                {"id": "c1", "sourceStepId": "fetch", "targetStepId": "extract"},
                {"id": "c2", "sourceStepId": "extract", "targetStepId": "store"},
            ],
        )

        execution = await engine.execute_workflow(workflow)

        assert execution.visited_step_ids == ["fetch", "extract", "store", "notify"]

    @pytest.mark.asyncio
    async def test_only_first_outgoing_connection_is_followed(self, engine, notifier):
        workflow = WorkflowConfig(
            id="wf_fanout",
            name="Fan out",
            steps=[
                {"id": "fetch", "type": "source"},
                {"id": "extract", "type": "extraction"},
                {"id": "notify", "type": "notification"},
            ],
            connections=[
                {"id": "c1", "source_step_id": "fetch", "target_step_id": "extract"},
                {"id": "c2", "source_step_id": "fetch", "target_step_id": "notify"},
            ],
        )

        execution = await engine.execute_workflow(workflow)

        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert execution.visited_step_ids == ["fetch", "extract"]
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_failed_step_stops_traversal(self, notifier):
        engine = WorkflowEngine(registry_with(NotificationStepHandler(notifier), {
            StepType.STORAGE: StorageStepHandler(FakePersistence(failing_tables={"documents", "extracted_json"})),
        }))

        execution = await engine.execute_workflow(make_workflow(PIPELINE))

        assert execution.status == ExecutionStatusEnum.FAILED
        assert execution.visited_step_ids == ["s1", "s2", "s3", "s4"]
        assert [result.status for result in execution.step_results] == [
            StepStatusEnum.COMPLETED, StepStatusEnum.COMPLETED, StepStatusEnum.COMPLETED, StepStatusEnum.FAILED,
        ]
        assert execution.step_results[3].output["success"] is False
        assert execution.errors[0].step_id == "s4"
        assert "fallback" in execution.errors[0].message
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_raising_handler_fails_execution(self):
        source = FakeSource(failures=[AuthenticationExpiredError("expired"), AuthenticationExpiredError("expired")])
        workflow = make_workflow(PIPELINE)
        engine = WorkflowEngine(registry_with(overrides={StepType.SOURCE: SourceStepHandler(source, sleep=no_sleep)}))

        execution = await engine.execute_workflow(workflow)

        assert execution.status == ExecutionStatusEnum.FAILED
        assert execution.visited_step_ids == ["s1"]
        assert execution.step_results[0].error.startswith("Reauthentication required")
        assert execution.errors[0].error_type == "ReauthenticationRequiredError"
        assert execution.errors[0].step_id == "s1"
        assert workflow.run_stats.failed_runs == 1

    @pytest.mark.asyncio
    async def test_transient_failure_is_distinguishable(self, fast_retry):
        source = FakeSource(failures=[TransientSourceError("503")] * 3)
        engine = WorkflowEngine(registry_with(overrides={
            StepType.SOURCE: SourceStepHandler(source, retry_config=fast_retry, sleep=no_sleep),
        }))

        execution = await engine.execute_workflow(make_workflow(PIPELINE))

        assert execution.errors[0].error_type == "SourceFetchError"
        assert execution.errors[0].message.startswith("Transient failure")

    @pytest.mark.asyncio
    async def test_per_document_failures_do_not_fail_the_run(self, documents):
        classifier = FakeClassifier({documents[0].name: RuntimeError("model timeout")})
        engine = WorkflowEngine(registry_with(overrides={
            StepType.SOURCE: SourceStepHandler(FakeSource(documents), sleep=no_sleep),
            StepType.EXTRACTION: ExtractionStepHandler(classifier, FakeExtractor()),
        }))

        execution = await engine.execute_workflow(make_workflow(["source", "extraction", "storage"]))

        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert len(execution.context["extracted_data"]) == len(documents)
        assert execution.context["error_count"] == 1
        assert execution.context["stored_count"] == 2

    @pytest.mark.asyncio
    async def test_context_is_shallow_merged(self):
        stage = StageHandler()
        engine = WorkflowEngine(registry_with(stage))

        execution = await engine.execute_workflow(
            make_workflow(["notification", "notification"]),
            initial_context={"tenant": "acme"}
        )

        assert execution.context["stage"] == "s2"
        assert execution.context["visited_s1"] is True
        assert execution.context["visited_s2"] is True
        assert execution.context["tenant"] == "acme"
        assert "success" not in execution.context
        assert "leaked" not in execution.context
        assert stage.seen[0]["workflow_id"] == "wf_test"
        assert stage.seen[0]["execution_id"] == execution.id
        assert stage.seen[1]["stage"] == "s1"

    @pytest.mark.asyncio
    async def test_non_dict_output_fails_step(self):
        class BrokenHandler(StepHandler):
            step_type = StepType.NOTIFICATION

            async def handle(self, step, context):
                return True

        execution = await WorkflowEngine(registry_with(BrokenHandler())).execute_workflow(
            make_workflow(["notification"])
        )

        assert execution.status == ExecutionStatusEnum.FAILED
        assert "expected a dict" in execution.errors[0].message

    @pytest.mark.asyncio
    async def test_multiple_entry_steps_rejected(self, engine):
        workflow = WorkflowConfig(
            id="wf_two_entries",
            name="Two entries",
            steps=[{"id": "a", "type": "source"}, {"id": "b", "type": "source"}],
        )

        with pytest.raises(GraphValidationError) as exc_info:
            await engine.execute_workflow(workflow)
        assert "multiple entry steps" in exc_info.value.validation_errors[0]

    @pytest.mark.asyncio
    async def test_cycle_rejected(self, engine):
        workflow = make_workflow(["source", "extraction", "storage"])
        workflow.connections.append(
            ConnectionDefinition(id="back", source_step_id="s3", target_step_id="s2")
        )

        with pytest.raises(GraphValidationError):
            await engine.execute_workflow(workflow)

    @pytest.mark.asyncio
    async def test_store_failure_is_recorded(self, handlers):
        class FailingStore:
            def save_execution(self, execution):
                raise StorageError("database locked", operation="save_execution")

        execution = await WorkflowEngine(handlers, execution_store=FailingStore()).execute_workflow(
            make_workflow(["source"])
        )

        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert execution.errors[0].error_type == "StorageError"


class TestValidateRequirements:

    @pytest.mark.asyncio
    async def test_valid_workflow(self, engine):
        result = await engine.validate_requirements(make_workflow(PIPELINE))
        assert result.is_valid is True
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_unauthenticated_source(self):
        engine = WorkflowEngine(registry_with(overrides={StepType.SOURCE: SourceStepHandler(FakeSource(authenticated=False))}))

        result = await engine.validate_requirements(make_workflow(PIPELINE))

        assert result.is_valid is False
        assert "authentication required" in result.errors[0]

    @pytest.mark.asyncio
    async def test_inactive_workflow_warns(self, engine):
        result = await engine.validate_requirements(make_workflow(["source"], is_active=False))
        assert result.is_valid is True
        assert any("inactive" in warning for warning in result.warnings)


class InterleavingHandler(StepHandler):
    """Yields to the event loop and records the log tags seen around it."""

    step_type = StepType.NOTIFICATION

    def __init__(self):
        self.observed = []

    async def handle(self, step, context):
        for _ in range(3):
            await asyncio.sleep(0)
            self.observed.append((context["execution_id"], step.id, current_logging_context()))
        return {"success": True, f"seen_by_{context['workflow_id']}": step.id}


class TestConcurrentExecutions:

    @pytest.mark.asyncio
    async def test_concurrent_runs_do_not_interfere(self):
        handler = InterleavingHandler()
        engine = WorkflowEngine(registry_with(handler))
        first = make_workflow(["notification", "notification", "notification"], workflow_id="wf_a")
        second = make_workflow(["notification", "notification"], workflow_id="wf_b")

        run_a, run_b = await asyncio.gather(
            engine.execute_workflow(first, initial_context={"tenant": "a"}),
            engine.execute_workflow(second, initial_context={"tenant": "b"}),
        )

        assert run_a.id != run_b.id
        assert run_a.visited_step_ids == ["s1", "s2", "s3"]
        assert run_b.visited_step_ids == ["s1", "s2"]
        assert run_a.context["tenant"] == "a" and run_b.context["tenant"] == "b"
        assert run_a.context["execution_id"] == run_a.id
        assert run_b.context["execution_id"] == run_b.id
        assert "seen_by_wf_b" not in run_a.context
        assert "seen_by_wf_a" not in run_b.context

        workflow_of = {run_a.id: "wf_a", run_b.id: "wf_b"}
        assert {execution_id for execution_id, _, _ in handler.observed} == {run_a.id, run_b.id}
        for execution_id, step_id, tags in handler.observed:
            assert tags["execution_id"] == execution_id
            assert tags["workflow_id"] == workflow_of[execution_id]
            assert tags["step_id"] == step_id

    @pytest.mark.asyncio
    async def test_run_restores_caller_log_tags(self, engine):
        token = set_logging_context(request_id="req-1")
        try:
            await engine.execute_workflow(make_workflow(["source"]))
            assert current_logging_context() == {"request_id": "req-1"}
        finally:
            reset_logging_context(token)
