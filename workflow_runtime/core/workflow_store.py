"""Storage of workflow definitions, loaded once at run start."""

import uuid
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import WorkflowDefinition, utcnow
from ..storage.database import get_db
from ..storage.models import WorkflowModel
from .error_recovery import STORAGE_RETRY, with_retry
from .exceptions import StorageError, WorkflowNotFoundError, WorkflowValidationError
from .graph import WorkflowGraph
from .logging import get_logger

logger = get_logger(__name__)


class WorkflowStore:
    """Saves and loads WorkflowDefinitions by ID."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory

    def _get_db_session(self) -> Session:
        if self._session_factory:
            return self._session_factory()
        return next(get_db())

    def save_workflow(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> WorkflowDefinition:
        """
        Store a workflow definition, assigning an ID when it has none.

        Saving a definition whose ID already exists replaces the stored graph.
        Structural problems that only matter at run time (no start node, a
        cycle) are logged as warnings, not rejected.

        Raises:
            WorkflowValidationError: If the definition does not parse
            StorageError: If the database write fails
        """
        if not isinstance(definition, WorkflowDefinition):
            try:
                definition = WorkflowDefinition.model_validate(definition)
            except ValidationError as e:
                raise WorkflowValidationError(
                    "Invalid workflow definition",
                    validation_errors=[error["msg"] for error in e.errors()],
                    workflow_name=str(definition.get("name")) if isinstance(definition, dict) else None
                )

        workflow_id = definition.id or str(uuid.uuid4())
        definition = definition.model_copy(update={"id": workflow_id})

        validation = WorkflowGraph(definition).validate()
        for problem in validation.errors + validation.warnings:
            logger.warning(f"Workflow '{definition.name}' ({workflow_id}): {problem}")

        db = self._get_db_session()
        try:
            model = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
            if model is None:
                model = WorkflowModel(id=workflow_id, created_at=utcnow())
                db.add(model)
            model.name = definition.name
            model.description = definition.description
            model.definition = definition.model_dump(mode="json")
            model.updated_at = utcnow()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while storing workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="save_workflow")
        finally:
            db.close()

        logger.info(f"Stored workflow '{definition.name}' with ID: {workflow_id}")
        return definition

    @with_retry(STORAGE_RETRY)
    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """
        Load a workflow definition by ID.

        Raises:
            WorkflowNotFoundError: If no workflow has this ID
            StorageError: If the database read fails
        """
        db = self._get_db_session()
        try:
            model = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
            if model is None:
                raise WorkflowNotFoundError(workflow_id)
            definition = WorkflowDefinition.model_validate({**model.definition, "id": model.id})
            logger.debug(f"Loaded workflow: {definition.name}")
            return definition
        except SQLAlchemyError as e:
            logger.error(f"Database error while loading workflow: {str(e)}")
            raise StorageError(f"Failed to load workflow: {str(e)}", operation="get_workflow")
        finally:
            db.close()

