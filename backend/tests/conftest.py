"""
Shared fixtures: an in-memory service with a controllable clock, one actor
per role, and a registered project in its two most used states.
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from models import Actor, ProjectCreate, ProjectStatus, Role, SupportingDocument
from project_service import ProjectLifecycleService
from repository import InMemoryProjectRepository

# Wednesday, inside business hours: no timing advisories by default
DEFAULT_NOW = datetime(2024, 3, 13, 10, 0)
PROJECT_ID = "PRJ-2024-001"


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_actor(role: Role, user_id: str = None) -> Actor:
    return Actor(
        user_id=user_id or f"{role.value.lower()}-001",
        name=f"Test {role.value}",
        role=role,
        ip_address="10.0.0.7",
        user_agent="pytest"
    )


def _make_document(original_name: str = "site-photo.jpg", file_type: str = "image") -> SupportingDocument:
    return SupportingDocument(
        file_name=f"stored-{original_name}",
        original_name=original_name,
        download_url=f"https://files.example.com/{original_name}",
        storage_path=f"projects/{PROJECT_ID}/{original_name}",
        file_size=2048,
        mime_type="image/jpeg" if file_type == "image" else "application/pdf",
        file_type=file_type,
        uploaded_at=DEFAULT_NOW
    )


@pytest.fixture
def clock():
    return FakeClock(DEFAULT_NOW)


@pytest.fixture
def repository():
    return InMemoryProjectRepository()


@pytest.fixture
def service(repository, clock):
    return ProjectLifecycleService(repository, clock=clock)


@pytest.fixture
def make_document():
    return _make_document


@pytest.fixture
def je():
    return make_actor(Role.JE)


@pytest.fixture
def aee():
    return make_actor(Role.AEE)


@pytest.fixture
def ce():
    return make_actor(Role.CE)


@pytest.fixture
def md():
    return make_actor(Role.MD)


@pytest.fixture
def admin():
    return make_actor(Role.ADMIN)


@pytest.fixture
def project(service, je):
    """Freshly submitted project with a 100000 estimated cost."""
    payload = ProjectCreate(
        project_id=PROJECT_ID,
        project_name="Ring Road Phase 1",
        estimated_cost=100000,
        project_end_date=datetime(2024, 12, 31)
    )
    return asyncio.run(service.create_project(payload, je))


@pytest.fixture
def ongoing_project(service, project, aee):
    """The same project after AEE approval."""
    result = asyncio.run(service.change_status(project.project_id, ProjectStatus.ONGOING, aee, remarks="Approved"))
    return result.project
