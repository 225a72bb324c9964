"""Extraction step: classify each document, then extract fields from accepted ones."""

from typing import Any, Dict, Optional

from ..core.agents import AgentCoordinator
from ..core.collaborators import Classifier, Extractor, invoke
from ..core.context import ProcessingContext
from ..core.exceptions import StepExecutionError
from ..core.logging import get_logger
from ..models.core import ClassificationResult, Document, StepDefinition, StepType
from .base import StepHandler

logger = get_logger(__name__)

STATUS_EXTRACTED = "extracted"
STATUS_REJECTED = "rejected"
STATUS_ERROR = "error"


class ExtractionStepHandler(StepHandler):
    """Two-phase per-document processing.

    Every input document yields exactly one entry in ``extracted_data``:
    an extracted record, a rejection, or an inline error. A failing document
    never aborts its siblings.

    Step config:
        min_confidence: classification confidence needed to extract
        skip_classification: extract every document without classifying
    """

    step_type = StepType.EXTRACTION

    def __init__(self, classifier: Classifier, extractor: Extractor, min_confidence: float = 0.5):
        self.classifier = classifier
        self.extractor = extractor
        self.min_confidence = min_confidence

    async def handle(self, step: StepDefinition, context: Dict[str, Any]) -> Dict[str, Any]:
        documents = context.get("documents") or []
        min_confidence = float(step.config.get("min_confidence", self.min_confidence))
        skip_classification = bool(step.config.get("skip_classification", False))

        extracted_data = []
        for document in documents:
            record = await self._process_document(document, min_confidence, skip_classification)
            extracted_data.append(record)

        counts = {status: 0 for status in (STATUS_EXTRACTED, STATUS_REJECTED, STATUS_ERROR)}
        for record in extracted_data:
            counts[record["status"]] += 1

        logger.info(
            f"Step {step.id}: {counts[STATUS_EXTRACTED]}/{len(documents)} extracted, "
            f"{counts[STATUS_REJECTED]} rejected, {counts[STATUS_ERROR]} failed"
        )
        return {
            "success": True,
            "extracted_data": extracted_data,
            "success_count": counts[STATUS_EXTRACTED],
            "rejected_count": counts[STATUS_REJECTED],
            "error_count": counts[STATUS_ERROR],
        }

    async def _process_document(self, document: Any, min_confidence: float, skip_classification: bool) -> Dict[str, Any]:
        name = getattr(document, "name", None) or str(document)
        record = {
            "document_name": name,
            "status": STATUS_ERROR,
            "document_type": None,
            "confidence": None,
            "reason": None,
            "data": None,
            "error": None,
            "error_stage": None,
        }

        if not skip_classification:
            try:
                classification = await invoke(self.classifier.classify, document)
                if not isinstance(classification, ClassificationResult):
                    classification = ClassificationResult.model_validate(classification)
            except Exception as e:
                logger.warning(f"Classification failed for {name}: {e}")
                record.update(error=str(e) or type(e).__name__, error_stage="classify")
                return record

            record.update(
                document_type=classification.document_type,
                confidence=classification.confidence,
                reason=classification.reason,
            )
            if not classification.is_target_class or classification.confidence < min_confidence:
                record["status"] = STATUS_REJECTED
                return record

        try:
            data = await invoke(self.extractor.extract, document)
        except Exception as e:
            logger.warning(f"Extraction failed for {name}: {e}")
            record.update(error=str(e) or type(e).__name__, error_stage="extract")
            return record

        if not isinstance(data, dict):
            data = {"data": data}
        if record["document_type"] is None:
            record["document_type"] = data.get("document_type")
        record.update(status=STATUS_EXTRACTED, data=data)
        return record


class CoordinatorExtractor:
    """``Extractor`` that runs a document through an agent chain.

    The chain's final result becomes the extracted record; a failed chain
    raises so the extraction step records an inline error for the document.
    """

    def __init__(self, coordinator: AgentCoordinator, start_agent_id: str, options: Optional[Dict[str, Any]] = None):
        self.coordinator = coordinator
        self.start_agent_id = start_agent_id
        self.options = dict(options or {})

    async def extract(self, document: Document) -> Dict[str, Any]:
        context = ProcessingContext(
            options=self.options,
            metadata={"document_name": getattr(document, "name", None)}
        )
        result = await self.coordinator.process(document, self.start_agent_id, context)
        if not result.success:
            raise StepExecutionError(
                f"Agent {result.metadata.get('agent_id')} failed: {result.error}",
                details={"agent_id": result.metadata.get("agent_id")}
            )

        data = result.data if isinstance(result.data, dict) else {"data": result.data}
        return {**data, "agent_path": result.metadata.get("path", [])}
