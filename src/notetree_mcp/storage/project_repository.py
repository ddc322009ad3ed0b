"""Repository for project storage and retrieval."""
import logging
from typing import ContextManager, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from notetree_mcp.exceptions import (
    NotFoundError,
    ProjectLockedError,
    ValidationError,
)
from notetree_mcp.models.db_models import (
    DBNode,
    DBProject,
    get_engine_lock,
    get_session_factory,
    init_db,
)
from notetree_mcp.models.schema import Project, ensure_timezone_aware
from notetree_mcp.storage.base import Repository, translated_session

logger = logging.getLogger(__name__)


class ProjectRepository(Repository[Project]):
    """Repository for projects, the scopes that own node trees.

    The lock flag is stored here and enforced by the services.
    """

    def __init__(self, engine=None):
        """Initialize the repository.

        Args:
            engine: SQLAlchemy engine. If None, uses default from config.
        """
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)
        self._lock = get_engine_lock(self.engine)
        logger.info("ProjectRepository initialized")

    def _session(self, operation: str) -> ContextManager[Session]:
        return translated_session(self.session_factory, self._lock, operation)

    def create(self, project: Project) -> Project:
        """Create a new project.

        Raises:
            ValidationError: If a project with the same ID already exists.
        """
        with self._session("project_create") as session:
            if session.get(DBProject, project.id):
                raise ValidationError(
                    f"Project '{project.id}' already exists",
                    field="id",
                    value=project.id,
                )
            session.add(
                DBProject(
                    id=project.id,
                    name=project.name,
                    is_locked=project.is_locked,
                    created_at=project.created_at,
                )
            )
            session.commit()

        logger.info(f"Created project: {project.id}")
        return project

    def get(self, id: str) -> Optional[Project]:
        with self._session("project_get") as session:
            db_project = session.get(DBProject, id)
            if not db_project:
                return None
            return self._db_to_model(db_project)

    def require(self, id: str) -> Project:
        """Get a project or raise NotFoundError."""
        project = self.get(id)
        if project is None:
            raise NotFoundError(id, entity="project")
        return project

    def get_all(self) -> List[Project]:
        with self._session("project_get_all") as session:
            result = session.execute(select(DBProject).order_by(DBProject.id))
            return [self._db_to_model(db) for db in result.scalars().all()]

    def set_locked(self, id: str, locked: bool) -> Project:
        """Lock or unlock a project.

        Raises:
            NotFoundError: If the project does not exist.
        """
        with self._session("project_set_locked") as session:
            db_project = session.get(DBProject, id)
            if not db_project:
                raise NotFoundError(id, entity="project")
            db_project.is_locked = locked
            session.commit()
            project = self._db_to_model(db_project)

        logger.info(f"Project {id} {'locked' if locked else 'unlocked'}")
        return project

    def delete(self, id: str) -> None:
        """Delete a project together with every node it owns.

        Raises:
            NotFoundError: If the project does not exist.
            ProjectLockedError: If the project is locked.
        """
        with self._session("project_delete") as session:
            db_project = session.get(DBProject, id)
            if not db_project:
                raise NotFoundError(id, entity="project")
            if db_project.is_locked:
                raise ProjectLockedError(id, operation="delete_project")

            removed = session.execute(
                delete(DBNode).where(DBNode.project_id == id)
            ).rowcount
            session.delete(db_project)
            session.commit()

        logger.info(f"Deleted project {id} and {removed or 0} nodes")

    def exists(self, id: str) -> bool:
        with self._session("project_exists") as session:
            return session.get(DBProject, id) is not None

    def get_node_count(self, id: str) -> int:
        """Number of nodes owned by a project."""
        with self._session("project_get_node_count") as session:
            count = session.scalar(
                select(func.count()).select_from(DBNode).where(DBNode.project_id == id)
            )
            return count or 0

    def _db_to_model(self, db_project: DBProject) -> Project:
        return Project(
            id=db_project.id,
            name=db_project.name,
            is_locked=bool(db_project.is_locked),
            created_at=ensure_timezone_aware(db_project.created_at),
        )
