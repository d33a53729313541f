"""Workflow document storage for the automation engine."""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import NodeKind, WorkflowDefinition
from ..storage.database import get_db
from ..storage.models import WorkflowModel
from .exceptions import StorageError, WorkflowDefinitionError, WorkflowNotFoundError
from .logging import get_logger

logger = get_logger(__name__)


class WorkflowRepository:
    """Stores and resolves workflow documents.

    Trigger adapters resolve workflows here on every event, so activation
    changes take effect on the next delivery.
    """

    def create_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        """
        Store a validated workflow and return it with its id assigned.

        Raises:
            WorkflowDefinitionError: If a workflow with the same id exists
            StorageError: If storage operation fails
        """
        workflow_id = workflow.id or str(uuid.uuid4())
        now = datetime.utcnow()
        stored = workflow.model_copy(update={"id": workflow_id, "created_at": now, "updated_at": now})

        db = next(get_db())
        try:
            if db.get(WorkflowModel, workflow_id) is not None:
                raise WorkflowDefinitionError(f"Workflow {workflow_id} already exists")

            db.add(WorkflowModel(
                id=workflow_id,
                name=stored.name,
                active=stored.active,
                schedule=stored.schedule,
                owner=stored.owner,
                definition=self._document(stored),
                created_at=now,
                updated_at=now,
            ))
            db.commit()

            logger.info(f"Stored workflow '{stored.name}' with ID: {workflow_id}")
            return stored

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while storing workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="create_workflow", table="workflows")
        finally:
            db.close()

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """
        Retrieve a workflow by id.

        Raises:
            WorkflowNotFoundError: If no workflow has this id
            StorageError: If the stored document is unreadable or storage fails
        """
        db = next(get_db())
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                raise WorkflowNotFoundError(workflow_id)
            return self._to_definition(model)
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow: {str(e)}", operation="get_workflow", table="workflows")
        finally:
            db.close()

    def list_workflows(self, active_only: bool = False) -> List[WorkflowDefinition]:
        db = next(get_db())
        try:
            query = db.query(WorkflowModel)
            if active_only:
                query = query.filter(WorkflowModel.active.is_(True))
            return [self._to_definition(m) for m in query.order_by(WorkflowModel.created_at.desc()).all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list_workflows", table="workflows")
        finally:
            db.close()

    def find_by_trigger_kind(self, kind: NodeKind, active_only: bool = True) -> List[WorkflowDefinition]:
        """Workflows containing at least one trigger node of ``kind``."""
        return [wf for wf in self.list_workflows(active_only=active_only) if wf.trigger_nodes(kind)]

    def set_active(self, workflow_id: str, active: bool) -> WorkflowDefinition:
        """
        Activate or deactivate a workflow.

        Raises:
            WorkflowNotFoundError: If no workflow has this id
        """
        db = next(get_db())
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                raise WorkflowNotFoundError(workflow_id)

            model.active = active
            model.updated_at = datetime.utcnow()
            document = dict(model.definition or {})
            document["active"] = active
            model.definition = document
            db.commit()
            db.refresh(model)

            logger.info(f"Workflow {workflow_id} {'activated' if active else 'deactivated'}")
            return self._to_definition(model)

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to update workflow: {str(e)}", operation="set_active", table="workflows")
        finally:
            db.close()

    def delete_workflow(self, workflow_id: str) -> bool:
        """
        Delete a workflow by id.

        Returns:
            bool: True if deleted, False if not found
        """
        db = next(get_db())
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                logger.warning(f"Workflow with ID '{workflow_id}' not found for deletion")
                return False
            db.delete(model)
            db.commit()
            logger.info(f"Deleted workflow with ID: {workflow_id}")
            return True
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to delete workflow: {str(e)}", operation="delete_workflow", table="workflows")
        finally:
            db.close()

    @staticmethod
    def _document(workflow: WorkflowDefinition) -> dict:
        return workflow.model_dump(mode="json", by_alias=True, exclude={"created_at", "updated_at"})

    @staticmethod
    def _to_definition(model: WorkflowModel) -> WorkflowDefinition:
        document = dict(model.definition or {})
        document.update(
            id=model.id,
            name=model.name,
            active=bool(model.active),
            schedule=model.schedule,
            owner=model.owner,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )
        try:
            return WorkflowDefinition.model_validate(document)
        except ValidationError as e:
            logger.error(f"Stored workflow {model.id} failed validation: {e}")
            raise StorageError(
                f"Stored workflow {model.id} is not a valid document",
                operation="load_workflow",
                table="workflows",
            )
