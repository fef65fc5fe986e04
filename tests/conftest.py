# tests/conftest.py
"""
Shared fixtures: in-memory SQLite engine, service container, FastAPI client
and a small seeded directory (department, users, one document).
"""
import os

# Settings are read at import time; keep tests off the file DB and the scheduler.
os.environ.setdefault("DOCFLOW_DATABASE_URL", "sqlite://")
os.environ.setdefault("DOCFLOW_SCHEDULER_ENABLED", "false")
os.environ.setdefault("DOCFLOW_LOG_JSON", "false")
os.environ.setdefault("DOCFLOW_LOG_LEVEL", "WARNING")

from datetime import datetime  # noqa: E402
from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import create_engine  # noqa: E402

from docflow.converters import user_to_actor  # noqa: E402
from docflow.deps import Services  # noqa: E402
from docflow.main import create_app  # noqa: E402
from docflow.models import (  # noqa: E402
    DepartmentCreateDTO,
    DepartmentUpdateDTO,
    DocumentCreateDTO,
    StepSpec,
    TemplateCreateDTO,
    UserCreateDTO,
)
from docflow.repository import create_schema  # noqa: E402

T0 = datetime(2026, 1, 5, 9, 0, 0)


@pytest.fixture()
def engine():
    # "sqlite://" + StaticPool keeps ONE connection alive, shared with TestClient threads
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    create_schema(eng)
    return eng


@pytest.fixture()
def services(engine):
    return Services(engine)


@pytest.fixture()
def app(engine):
    return create_app(engine=engine, start_scheduler=False)


@pytest.fixture()
def client(app):
    """Synchronous HTTP client against the app (same engine as `services`)."""
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def api_services(app):
    return app.state.services


def _seed(services: Services) -> SimpleNamespace:
    d = services.directory
    dept = d.create_department(DepartmentCreateDTO(name="Finance", code="FIN"))

    def user(name, role="user", department_id=dept.id, manager_id=None):
        dto = d.create_user(UserCreateDTO(
            name=name,
            email=f"{name.lower()}@example.com",
            role=role,
            department_id=department_id,
            manager_id=manager_id,
        ))
        return user_to_actor(d.get_user_row(dto.id))

    admin = user("Admin", role="admin")
    head = user("Helen", role="manager")
    d.update_department(dept.id, DepartmentUpdateDTO(head_id=head.id))
    manager = user("Mark", role="manager")
    alice = user("Alice", role="approver", manager_id=manager.id)
    bob = user("Bob", role="reviewer")
    carol = user("Carol", role="approver")
    dave = user("Dave", role="approver")
    outsider = user("Olga", role="user", department_id=None)

    document = d.create_document(
        DocumentCreateDTO(
            title="Invoice 42",
            file_type="pdf",
            department_id=dept.id,
            metadata={"amount": 1500, "reviewHours": 12},
        ),
        alice,
    )
    return SimpleNamespace(
        dept=dept,
        admin=admin,
        head=head,
        manager=manager,
        alice=alice,
        bob=bob,
        carol=carol,
        dave=dave,
        outsider=outsider,
        document=document,
    )


@pytest.fixture()
def seed(services):
    return _seed(services)


@pytest.fixture()
def api_seed(api_services):
    return _seed(api_services)


def make_template(services, actor, steps, **kwargs):
    """Create a template through the store; `steps` are plain dicts in wire format."""
    data = TemplateCreateDTO(
        name=kwargs.pop("name", "Invoice approval"),
        department=kwargs.pop("department", "FIN"),
        file_types=kwargs.pop("file_types", ["pdf"]),
        steps=[StepSpec.model_validate(s) for s in steps],
        **kwargs,
    )
    return services.templates.create_template(data, actor, now=T0)


def auth(actor) -> dict:
    return {"Authorization": f"Bearer mock-{actor.id}"}
