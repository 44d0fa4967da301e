import asyncio
import inspect
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from projectauth.config import Settings  # noqa: E402
from projectauth.service.email import EmailTemplate  # noqa: E402
from projectauth.service.projects import RequestContext  # noqa: E402
from projectauth.service.runtime import build_runtime  # noqa: E402
from projectauth.storage.models import ProjectSettings  # noqa: E402


class RecordingMailer:
    """Mailer double that keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    async def send(self, project_id: str, template: EmailTemplate, data: Mapping[str, Any]) -> bool:
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append({"project_id": project_id, "template": template, **data})
        return True

    def last(self, template: EmailTemplate) -> Dict[str, Any]:
        matching = [m for m in self.sent if m["template"] == template]
        assert matching, f"no {template.value} email was sent"
        return matching[-1]


@pytest.fixture
def settings():
    """Settings with cheap Argon2 parameters so tests stay fast."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        password_time_cost=1,
        password_memory_cost=1024,
        password_parallelism=1,
        operation_timeout_seconds=5.0,
    )


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def runtime(settings, mailer):
    return build_runtime(settings, mailer=mailer)


@pytest.fixture
def project(runtime):
    """Project that requires email verification (the default policy)."""
    project, _ = runtime.projects.create_project("Acme")
    return project


@pytest.fixture
def open_project(runtime):
    """Project whose users can sign in without verifying their email."""
    project, _ = runtime.projects.create_project(
        "Open", settings=ProjectSettings(require_email_verification=False)
    )
    return project


@pytest.fixture
def ctx(project):
    return RequestContext(project=project)


@pytest.fixture
def open_ctx(open_project):
    return RequestContext(project=open_project)


@pytest.fixture
def admin_ctx(open_project):
    return RequestContext(project=open_project, role="admin")


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
