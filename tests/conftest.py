"""Pytest configuration and fixtures."""

import os
import tempfile
from typing import Any, Dict, List

import pytest

from hitl_engine.config import get_testing_config
from hitl_engine.core.engine import WorkflowEngine
from hitl_engine.core.executors import ExecutorRegistry
from hitl_engine.core.notifications import Notifier, NotificationEvent
from hitl_engine.storage.store import SQLDocumentStore


@pytest.fixture
def db_url():
    """Create a temporary SQLite database file."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    yield f"sqlite:///{db_path}"

    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def test_config(db_url):
    return get_testing_config(database_url=db_url)


@pytest.fixture
def store(db_url):
    """Document store over the temporary database."""
    document_store = SQLDocumentStore(db_url)
    yield document_store
    document_store.close()


def uppercase_text(context: Dict[str, Any]) -> Dict[str, Any]:
    return {"text": str(context.get("text", "")).upper()}


def append_trace(context: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
    trace = list(context.get("trace", []))
    trace.append(config.get("mark", "?"))
    return {"trace": trace}


@pytest.fixture
def executors():
    """Registry with the builtins plus a few simple test executors."""
    registry = ExecutorRegistry()
    registry.register("uppercase", uppercase_text)
    registry.register("trace", append_trace)
    return registry


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def events(notifier) -> List[NotificationEvent]:
    """Every event published through the notifier, in order."""
    received: List[NotificationEvent] = []
    notifier.add_listener(received.append)
    return received


@pytest.fixture
def engine(store, executors, notifier, test_config):
    """Workflow engine over the temporary store."""
    return WorkflowEngine(store, executors=executors, notifier=notifier, config=test_config)


def trace_node(node_id: str, mark: str = None) -> Dict[str, Any]:
    return {"id": node_id, "type": "trace", "config": {"mark": mark or node_id}}


def review_node(node_id: str, **config) -> Dict[str, Any]:
    config.setdefault("instructions", "Please review {{text}}")
    return {"id": node_id, "type": "human_review", "config": config}


def edge(source: str, target: str, condition: Any = None) -> Dict[str, Any]:
    data = {"source": source, "target": target}
    if condition is not None:
        data["condition"] = condition
    return data
