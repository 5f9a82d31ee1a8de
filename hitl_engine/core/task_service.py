"""Clients for the external service that surfaces review tasks to humans."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel, Field

from .exceptions import TaskServiceError
from .logging import get_logger

logger = get_logger(__name__)


class TaskRequest(BaseModel):
    """Payload sent to the task service when a run pauses."""
    execution_id: str = Field(..., serialization_alias="executionId")
    node_id: str = Field(..., serialization_alias="nodeId")
    task_id: str = Field(..., serialization_alias="taskId")
    title: str
    description: str
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    callback_url: Optional[str] = Field(None, serialization_alias="callbackUrl")


class TaskService(ABC):
    """Creates a human-facing task and returns the service's own id for it."""

    @abstractmethod
    async def create_task(self, request: TaskRequest) -> Optional[str]:
        ...


class NullTaskService(TaskService):
    """Used when tasks are only surfaced through the engine's own API."""

    async def create_task(self, request: TaskRequest) -> Optional[str]:
        logger.debug(f"No task service configured; task {request.task_id} kept local")
        return None


class HttpTaskService(TaskService):
    """Posts tasks to an HTTP endpoint."""

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    async def create_task(self, request: TaskRequest) -> Optional[str]:
        """
        Create the task remotely.

        Args:
            request: Task details, including the callback URL for the decision

        Returns:
            The external task id, when the service returns one

        Raises:
            TaskServiceError: If the request fails or the service rejects it
        """
        endpoint = f"{self.base_url}/tasks"
        payload = request.model_dump(mode="json", by_alias=True)

        try:
            response = await asyncio.to_thread(
                self.session.post, endpoint, json=payload, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise TaskServiceError(f"Task service request failed: {str(e)}", endpoint=endpoint) from e

        external_id = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if isinstance(body, dict):
                external_id = body.get("id") or body.get("taskId")

        logger.info(f"Created external task {external_id} for execution {request.execution_id}")
        return str(external_id) if external_id is not None else None
