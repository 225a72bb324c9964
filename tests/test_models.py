"""Tests for workflow definition models."""

import pytest
from pydantic import ValidationError

from docflow.models.core import (
    ClassificationResult, ConnectionDefinition, Document, StepDefinition, StepType, WorkflowConfig,
)

from .conftest import make_workflow


class TestStepDefinition:

    def test_type_is_closed(self):
        with pytest.raises(ValidationError):
            StepDefinition(id="s1", type="webhook")

    def test_name_defaults_to_id(self):
        step = StepDefinition(id="fetch_mail", type="source")
        assert step.type == StepType.SOURCE
        assert step.name == "fetch_mail"

    @pytest.mark.parametrize("step_id", ["", "   ", "has space", "semi;colon"])
    def test_invalid_ids(self, step_id):
        with pytest.raises(ValidationError):
            StepDefinition(id=step_id, type="source")


class TestWorkflowConfig:
    """Test cases for WorkflowConfig validation."""

    def test_duplicate_step_ids(self):
        with pytest.raises(ValidationError, match="unique"):
            WorkflowConfig(id="wf", name="Dup", steps=[
                {"id": "a", "type": "source"}, {"id": "a", "type": "storage"},
            ])

    def test_connection_to_unknown_step(self):
        with pytest.raises(ValidationError, match="non-existent"):
            WorkflowConfig(id="wf", name="Dangling", steps=[{"id": "a", "type": "source"}],
                           connections=[{"id": "c1", "sourceStepId": "a", "targetStepId": "ghost"}])

    def test_self_connection(self):
        with pytest.raises(ValidationError):
            ConnectionDefinition(id="c1", source_step_id="a", target_step_id="a")

    def test_requires_a_step(self):
        with pytest.raises(ValidationError):
            WorkflowConfig(id="wf", name="Empty", steps=[])

    def test_camel_case_aliases(self):
        workflow = WorkflowConfig.model_validate({
            "id": "wf", "name": "Aliases", "isActive": False,
            "runStats": {"total_runs": 4},
            "steps": [{"id": "a", "type": "source"}, {"id": "b", "type": "storage"}],
            "connections": [{"id": "c1", "sourceStepId": "a", "targetStepId": "b"}],
        })
        assert workflow.is_active is False
        assert workflow.run_stats.total_runs == 4
        assert workflow.connections[0].target_step_id == "b"

    def test_valid_structure(self):
        workflow = make_workflow(["source", "extraction", "storage"])
        result = workflow.validate_structure()
        assert result.is_valid is True
        assert [step.id for step in workflow.entry_steps()] == ["s1"]
        assert [conn.target_step_id for conn in workflow.outgoing("s1")] == ["s2"]

    def test_multiple_entry_steps(self):
        workflow = WorkflowConfig(id="wf", name="Two", steps=[{"id": "a", "type": "source"},
                                                             {"id": "b", "type": "source"}])
        result = workflow.validate_structure()
        assert result.is_valid is False
        assert "multiple entry steps" in result.errors[0]

    def test_no_entry_step(self):
        workflow = WorkflowConfig(
            id="wf", name="Ring",
            steps=[{"id": "a", "type": "source"}, {"id": "b", "type": "storage"}],
            connections=[{"id": "c1", "sourceStepId": "a", "targetStepId": "b"},
                         {"id": "c2", "sourceStepId": "b", "targetStepId": "a"}],
        )
        result = workflow.validate_structure()
        assert result.is_valid is False
        assert any("no entry step" in error for error in result.errors)
        assert any("cycle" in error for error in result.errors)

    def test_fan_out_warning(self):
        workflow = WorkflowConfig(
            id="wf", name="Fan",
            steps=[{"id": "a", "type": "source"}, {"id": "b", "type": "storage"},
                   {"id": "c", "type": "notification"}],
            connections=[{"id": "c1", "sourceStepId": "a", "targetStepId": "b"},
                         {"id": "c2", "sourceStepId": "a", "targetStepId": "c"}],
        )
        result = workflow.validate_structure()
        assert result.is_valid is True
        assert "only the first is followed" in result.warnings[0]


class TestCollaboratorModels:

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            ClassificationResult(is_target_class=True, confidence=1.5)

    def test_document_content_serializes_as_base64(self):
        document = Document(name="a.pdf", content=b"\x00\xff")
        assert document.model_dump(mode="json")["content"] == "AP8="
        assert document.model_dump()["content"] == b"\x00\xff"
