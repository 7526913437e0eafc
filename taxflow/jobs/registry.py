"""
Task Executor Registry

Maps a task type name to the handler that performs the work. Each owning
subsystem registers its task types at startup; the scheduler freezes the
registry when it starts.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from taxflow.jobs.errors import JobValidationError, UnknownTaskType

logger = logging.getLogger(__name__)

# handler(ctx) -> result, sync or async. ctx is a taxflow.jobs.runner.JobContext.
TaskHandler = Callable[[Any], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class TaskDefinition:
    """One registered task type."""
    name: str
    handler: TaskHandler
    payload_model: Optional[Type[BaseModel]] = None
    description: Optional[str] = None

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    def validate_payload(self, payload: Any) -> Any:
        """
        Check the payload against the payload model, if any.

        The payload is stored as submitted; the model is only a gate.
        """
        if self.payload_model is None:
            return payload
        try:
            self.payload_model.model_validate(payload if payload is not None else {})
        except PydanticValidationError as e:
            raise JobValidationError(
                f"Invalid payload for task type {self.name}",
                {"errors": e.errors(include_url=False, include_context=False)}
            ) from e
        return payload


class TaskRegistry:
    """Name -> TaskDefinition mapping."""

    def __init__(self):
        self._tasks: Dict[str, TaskDefinition] = {}
        self._frozen = False

    def register(
        self,
        name: str,
        handler: TaskHandler,
        payload_model: Optional[Type[BaseModel]] = None,
        description: Optional[str] = None
    ) -> TaskDefinition:
        """Register a handler for a task type."""
        name = getattr(name, "value", name)
        if self._frozen:
            raise RuntimeError(f"Registry is frozen; cannot register task type {name}")
        if not name:
            raise ValueError("Task type name is required")
        if name in self._tasks:
            raise ValueError(f"Task type {name} is already registered")

        definition = TaskDefinition(
            name=name,
            handler=handler,
            payload_model=payload_model,
            description=description
        )
        self._tasks[name] = definition
        logger.info(f"Registered handler for task type: {name}")
        return definition

    def task(
        self,
        name: str,
        payload_model: Optional[Type[BaseModel]] = None,
        description: Optional[str] = None
    ):
        """Decorator form of register()."""
        def decorator(handler: TaskHandler) -> TaskHandler:
            self.register(name, handler, payload_model=payload_model, description=description)
            return handler
        return decorator

    def resolve(self, name: str) -> TaskDefinition:
        """Look up a task type, raising UnknownTaskType if missing."""
        name = getattr(name, "value", name)
        definition = self._tasks.get(name)
        if definition is None:
            raise UnknownTaskType(name)
        return definition

    def freeze(self):
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def names(self) -> List[str]:
        return sorted(self._tasks)

    def __contains__(self, name: str) -> bool:
        return getattr(name, "value", name) in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
