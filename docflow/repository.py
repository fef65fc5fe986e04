"""
Repository Layer
Directory data: users, departments and the documents workflows run against.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import Engine
from sqlmodel import SQLModel, Session, select

from .converters import dumps, loads, user_to_dto, department_to_dto, document_to_dto
from .errors import ConflictError, DepartmentNotFoundError, SubjectNotFoundError, UserNotFoundError
from .logging_config import get_logger
from .models import (
    ActorContext,
    UserTable,
    UserCreateDTO,
    UserUpdateDTO,
    UserDTO,
    DepartmentTable,
    DepartmentCreateDTO,
    DepartmentUpdateDTO,
    DepartmentDTO,
    DocumentTable,
    DocumentCreateDTO,
    DocumentUpdateDTO,
    DocumentDTO,
    InstanceTable,
    InstanceStatus,
)
from .util import new_id, resolve_now

logger = get_logger(__name__)


def create_schema(engine: Engine) -> None:
    """Create all database tables"""
    SQLModel.metadata.create_all(engine)


class DirectoryRepository:
    """CRUD for users, departments and documents"""

    def __init__(self, engine: Engine):
        self.engine = engine

    # ========================================================================
    # Users
    # ========================================================================

    def _email_taken(self, session: Session, email: str, exclude_id: Optional[str] = None) -> bool:
        row = session.exec(select(UserTable).where(UserTable.email == email)).first()
        return row is not None and row.id != exclude_id

    def create_user(self, data: UserCreateDTO, now: Optional[datetime] = None) -> UserDTO:
        with Session(self.engine) as session:
            if self._email_taken(session, data.email):
                raise ConflictError(f"Email {data.email} already in use", details={"email": data.email})
            row = UserTable(
                id=new_id("usr_"),
                name=data.name,
                email=data.email,
                role=data.role,
                department_id=data.department_id,
                manager_id=data.manager_id,
                active=True,
                created_at=resolve_now(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return user_to_dto(row)

    def list_users(
        self,
        role: Optional[str] = None,
        department_id: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> List[UserDTO]:
        with Session(self.engine) as session:
            stmt = select(UserTable)
            if role:
                stmt = stmt.where(UserTable.role == role)
            if department_id:
                stmt = stmt.where(UserTable.department_id == department_id)
            if active is not None:
                stmt = stmt.where(UserTable.active == active)
            rows = session.exec(stmt.order_by(UserTable.name, UserTable.id)).all()
            return [user_to_dto(r) for r in rows]

    def get_user_row(self, user_id: str) -> Optional[UserTable]:
        with Session(self.engine) as session:
            return session.get(UserTable, user_id)

    def get_user(self, user_id: str) -> UserDTO:
        row = self.get_user_row(user_id)
        if not row:
            raise UserNotFoundError(user_id)
        return user_to_dto(row)

    def update_user(self, user_id: str, data: UserUpdateDTO) -> UserDTO:
        with Session(self.engine) as session:
            row = session.get(UserTable, user_id)
            if not row:
                raise UserNotFoundError(user_id)
            if data.email is not None and self._email_taken(session, data.email, exclude_id=user_id):
                raise ConflictError(f"Email {data.email} already in use", details={"email": data.email})
            for field, value in data.model_dump(exclude_unset=True).items():
                setattr(row, field, value)
            session.add(row)
            session.commit()
            session.refresh(row)
            return user_to_dto(row)

    def deactivate_user(self, user_id: str) -> UserDTO:
        """Users are never hard-deleted; decisions and audit rows reference them."""
        with Session(self.engine) as session:
            row = session.get(UserTable, user_id)
            if not row:
                raise UserNotFoundError(user_id)
            row.active = False
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("User deactivated", extra={"actor_id": user_id})
            return user_to_dto(row)

    # ========================================================================
    # Departments
    # ========================================================================

    def _code_taken(self, session: Session, code: str, exclude_id: Optional[str] = None) -> bool:
        row = session.exec(select(DepartmentTable).where(DepartmentTable.code == code)).first()
        return row is not None and row.id != exclude_id

    def create_department(self, data: DepartmentCreateDTO, now: Optional[datetime] = None) -> DepartmentDTO:
        with Session(self.engine) as session:
            if self._code_taken(session, data.code):
                raise ConflictError(f"Department code {data.code} already in use", details={"code": data.code})
            row = DepartmentTable(
                id=new_id("dep_"),
                name=data.name,
                code=data.code,
                head_id=data.head_id,
                created_at=resolve_now(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return department_to_dto(row)

    def list_departments(self) -> List[DepartmentDTO]:
        with Session(self.engine) as session:
            rows = session.exec(select(DepartmentTable).order_by(DepartmentTable.name)).all()
            return [department_to_dto(r) for r in rows]

    def get_department(self, department_id: str) -> DepartmentDTO:
        with Session(self.engine) as session:
            row = session.get(DepartmentTable, department_id)
            if not row:
                raise DepartmentNotFoundError(department_id)
            return department_to_dto(row)

    def update_department(self, department_id: str, data: DepartmentUpdateDTO) -> DepartmentDTO:
        with Session(self.engine) as session:
            row = session.get(DepartmentTable, department_id)
            if not row:
                raise DepartmentNotFoundError(department_id)
            if data.code is not None and self._code_taken(session, data.code, exclude_id=department_id):
                raise ConflictError(f"Department code {data.code} already in use", details={"code": data.code})
            for field, value in data.model_dump(exclude_unset=True).items():
                setattr(row, field, value)
            session.add(row)
            session.commit()
            session.refresh(row)
            return department_to_dto(row)

    def delete_department(self, department_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(DepartmentTable, department_id)
            if not row:
                raise DepartmentNotFoundError(department_id)
            member = session.exec(
                select(UserTable.id).where(UserTable.department_id == department_id).limit(1)
            ).first()
            if member:
                raise ConflictError(
                    "Department still has users",
                    details={"id": department_id, "userId": member},
                )
            session.delete(row)
            session.commit()

    # ========================================================================
    # Documents
    # ========================================================================

    def create_document(
        self,
        data: DocumentCreateDTO,
        actor: ActorContext,
        now: Optional[datetime] = None,
    ) -> DocumentDTO:
        now = resolve_now(now)
        row = DocumentTable(
            id=new_id("doc_"),
            title=data.title,
            file_type=data.file_type,
            owner_id=data.owner_id or actor.id,
            department_id=data.department_id or actor.department_id,
            meta=dumps(data.metadata),
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return document_to_dto(row)

    def list_documents(
        self,
        owner_id: Optional[str] = None,
        department_id: Optional[str] = None,
        file_type: Optional[str] = None,
    ) -> List[DocumentDTO]:
        with Session(self.engine) as session:
            stmt = select(DocumentTable)
            if owner_id:
                stmt = stmt.where(DocumentTable.owner_id == owner_id)
            if department_id:
                stmt = stmt.where(DocumentTable.department_id == department_id)
            if file_type:
                stmt = stmt.where(DocumentTable.file_type == file_type)
            rows = session.exec(stmt.order_by(DocumentTable.created_at.desc(), DocumentTable.id)).all()
            return [document_to_dto(r) for r in rows]

    def get_document(self, document_id: str) -> DocumentDTO:
        with Session(self.engine) as session:
            row = session.get(DocumentTable, document_id)
            if not row:
                raise SubjectNotFoundError(document_id)
            return document_to_dto(row)

    def update_document(
        self,
        document_id: str,
        data: DocumentUpdateDTO,
        now: Optional[datetime] = None,
    ) -> DocumentDTO:
        with Session(self.engine) as session:
            row = session.get(DocumentTable, document_id)
            if not row:
                raise SubjectNotFoundError(document_id)
            if data.title is not None:
                row.title = data.title
            if data.file_type is not None:
                row.file_type = data.file_type
            if data.department_id is not None:
                row.department_id = data.department_id
            if data.metadata is not None:
                row.meta = dumps({**loads(row.meta, {}), **data.metadata})
            row.updated_at = resolve_now(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return document_to_dto(row)

    def delete_document(self, document_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(DocumentTable, document_id)
            if not row:
                raise SubjectNotFoundError(document_id)
            running = session.exec(
                select(InstanceTable.id).where(
                    InstanceTable.subject_ref == document_id,
                    InstanceTable.status == InstanceStatus.active.value,
                ).limit(1)
            ).first()
            if running:
                raise ConflictError(
                    "Document has an active workflow",
                    details={"id": document_id, "instanceId": running},
                )
            session.delete(row)
            session.commit()
