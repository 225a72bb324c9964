"""Pytest configuration and fixtures."""

from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docflow.storage.database import Base
from docflow.storage import models  # noqa: F401  registers the mapped classes
from docflow.core.retry import RetryConfig
from docflow.core.exceptions import TransientSourceError
from docflow.core.workflow_engine import WorkflowEngine
from docflow.handlers import (
    ComparisonStepHandler, ExtractionStepHandler, NotificationStepHandler,
    SourceStepHandler, StepHandlerRegistry, StorageStepHandler,
)
from docflow.models.core import (
    ClassificationResult, Document, WorkflowConfig, WriteResult,
)


class FakeSource:
    """Document source returning fixed documents after scripted failures."""

    def __init__(self, documents: Optional[List[Any]] = None, failures: Optional[List[Exception]] = None,
                 authenticated: bool = True, refresh_error: Optional[Exception] = None):
        self.documents = documents if documents is not None else []
        self.failures = list(failures or [])
        self.authenticated = authenticated
        self.refresh_error = refresh_error
        self.fetch_calls = 0
        self.refresh_calls = 0
        self.last_criteria: Optional[Dict[str, Any]] = None

    async def fetch(self, filter_criteria):
        self.fetch_calls += 1
        self.last_criteria = filter_criteria
        if self.failures:
            raise self.failures.pop(0)
        return list(self.documents)

    async def refresh_credentials(self):
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error

    def is_authenticated(self):
        return self.authenticated


class FakeClassifier:
    """Accepts every document unless a verdict or error is scripted by name."""

    def __init__(self, verdicts: Optional[Dict[str, Any]] = None):
        self.verdicts = verdicts or {}
        self.calls: List[str] = []

    async def classify(self, document):
        self.calls.append(document.name)
        verdict = self.verdicts.get(document.name)
        if isinstance(verdict, Exception):
            raise verdict
        if verdict is not None:
            return verdict
        return ClassificationResult(is_target_class=True, confidence=0.9, reason="looks like an invoice",
                                    document_type="invoice")


class FakeExtractor:
    """Sync extractor returning scripted records by document name."""

    def __init__(self, records: Optional[Dict[str, Any]] = None):
        self.records = records or {}
        self.calls: List[str] = []

    def extract(self, document):
        self.calls.append(document.name)
        record = self.records.get(document.name)
        if isinstance(record, Exception):
            raise record
        if record is not None:
            return record
        return {"document_name": document.name, "total": 100.0}


class FakePersistence:
    """Records writes; tables in ``failing_tables`` raise."""

    def __init__(self, failing_tables=(), error_results: Optional[Dict[str, WriteResult]] = None):
        self.failing_tables = set(failing_tables)
        self.error_results = error_results or {}
        self.writes: List[Any] = []

    async def write(self, records, options):
        self.writes.append((options.table, options.mode, list(records)))
        if options.table in self.failing_tables:
            raise RuntimeError(f"table {options.table} is unavailable")
        if options.table in self.error_results:
            return self.error_results[options.table]
        return WriteResult(stored_count=len(records))


class FakeNotifier:

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.sent = []

    def send(self, summary):
        if self.error is not None:
            raise self.error
        self.sent.append(summary)


async def no_sleep(delay):
    """Replacement for asyncio.sleep in retry tests."""
    no_sleep.delays.append(delay)


no_sleep.delays = []


def make_documents(*names: str) -> List[Document]:
    return [Document(name=name, mime_type="application/pdf", content=b"%PDF-1.4") for name in names]


def make_workflow(step_types: List[str], configs: Optional[Dict[int, Dict[str, Any]]] = None,
                  workflow_id: str = "wf_test", **kwargs) -> WorkflowConfig:
    """Linear workflow s1 -> s2 -> ... with one step per type."""
    configs = configs or {}
    steps = [
        {"id": f"s{index}", "type": step_type, "config": configs.get(index, {})}
        for index, step_type in enumerate(step_types, start=1)
    ]
    connections = [
        {"id": f"c{index}", "source_step_id": f"s{index}", "target_step_id": f"s{index + 1}"}
        for index in range(1, len(step_types))
    ]
    return WorkflowConfig(id=workflow_id, name="Test workflow", steps=steps, connections=connections, **kwargs)


@pytest.fixture
def db_session():
    """In-memory SQLite session with all tables created."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def documents():
    return make_documents("invoice-001.pdf", "invoice-002.pdf", "invoice-003.pdf")


@pytest.fixture
def source(documents):
    return FakeSource(documents)


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def persistence():
    return FakePersistence()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def fast_retry():
    return RetryConfig(max_attempts=3, base_delay=0.01, max_delay=0.05, jitter=False,
                       retryable_exceptions=[TransientSourceError])


@pytest.fixture
def handlers(source, classifier, extractor, persistence, notifier, fast_retry):
    """Handler registry over the fake collaborators."""
    no_sleep.delays.clear()
    return StepHandlerRegistry([
        SourceStepHandler(source, retry_config=fast_retry, sleep=no_sleep),
        ExtractionStepHandler(classifier, extractor),
        ComparisonStepHandler(),
        StorageStepHandler(persistence),
        NotificationStepHandler(notifier),
    ])


@pytest.fixture
def engine(handlers):
    return WorkflowEngine(handlers)
