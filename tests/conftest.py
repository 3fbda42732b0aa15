"""
Pytest fixtures for the deed workflow kernel test suite.

Provides:
- A database engine shared by the whole session (SQLite file by default)
- Per-test table cleanup, session factory and WorkflowService
- Deterministic clock, staff accounts and actors for every role
- Captured structured logs and recorded status notifications

Environment Variables:
- DEED_DATABASE_URL: SQLAlchemy URL of the test database.  If not set, a
  SQLite file in the pytest temp directory is used.  PostgreSQL needs the
  ``postgres`` extra installed.
"""

import json
import logging
import os
import threading
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy import text

from deed_config import clear_config_cache, get_active_config
from deed_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from deed_kernel.db.immutability import register_immutability_listeners
from deed_kernel.domain.clock import DeterministicClock
from deed_kernel.domain.forms import Actor
from deed_kernel.domain.workflow import FormStatus, FormType, Role
from deed_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from deed_kernel.services.form_locks import FormLockRegistry
from deed_kernel.services.workflow_service import WorkflowService

# Children first: raw DELETE bypasses the ORM immutability listeners.
_TABLES_IN_DELETE_ORDER = (
    "change_log_entries",
    "approval_records",
    "assignment_history",
    "forms",
    "staff_accounts",
)


# Minimal valid payloads (required fields plus a few reviewer fields).
SAMPLE_PAYLOADS: dict[FormType, dict] = {
    FormType.SALE_DEED: {
        "salePrice": 2500000,
        "stampDuty": 175000,
        "sellers": [{"name": "Ravi Kumar", "idNumber": "AAAPK1234C"}],
        "buyers": [{"name": "Meena Sharma", "idNumber": "BBBPS5678D"}],
        "district": "Lucknow",
        "khasraNo": "221/4",
        "propertyMapUrl": "https://files.example.org/maps/221-4.png",
    },
    FormType.WILL_DEED: {
        "testator": "Hari Prasad",
        "beneficiaries": ["Sita Prasad"],
        "district": "Kanpur",
    },
    FormType.TRUST_DEED: {
        "trustName": "Vidya Seva Trust",
        "trustAddress": "12 Civil Lines, Agra",
        "startingAmount": 100000,
    },
    FormType.PROPERTY_REGISTRATION: {
        "ownerName": "Anil Verma",
        "propertyType": "residential",
        "district": "Varanasi",
    },
    FormType.POWER_OF_ATTORNEY: {
        "principal": "Kamla Devi",
        "agent": "Suresh Yadav",
        "powerType": "general",
    },
    FormType.ADOPTION_DEED: {
        "childName": "Aarav",
        "adoptiveParents": ["Rakesh Gupta", "Neha Gupta"],
        "district": "Prayagraj",
    },
    FormType.PROPERTY_SALE_CERTIFICATE: {
        "bidderName": "Omkar Traders",
        "salePrice": 4100000,
        "bankName": "State Co-operative Bank",
    },
    FormType.CONTACT_FORM: {
        "name": "Pooja Singh",
        "subject": "Certified copy",
        "message": "How do I get a certified copy of my sale deed?",
        "email": "pooja@example.org",
    },
}


def get_database_url(tmp_dir) -> str:
    return os.environ.get("DEED_DATABASE_URL") or f"sqlite:///{tmp_dir / 'deed_test.db'}"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture deed_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, workflow):
            workflow.decide(...)
            logs = captured_logs()
            assert any(r["message"] == "decision_recorded" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("deed_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture(scope="session")
def db_engine(tmp_path_factory):
    """Single engine for the entire test session; tables created once."""
    url = get_database_url(tmp_path_factory.mktemp("db"))
    eng = init_engine_from_url(url, echo=False, pool_size=30, max_overflow=20)
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield eng
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    """Session factory over freshly emptied tables."""
    with db_engine.begin() as conn:
        for table in _TABLES_IN_DELETE_ORDER:
            conn.execute(text(f"DELETE FROM {table}"))
    return get_session_factory()


@pytest.fixture
def is_sqlite(db_engine) -> bool:
    return db_engine.dialect.name == "sqlite"


# =============================================================================
# Workflow fixtures
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def config():
    clear_config_cache()
    return get_active_config()


class RecordingListener:
    """Collects every delivered status change."""

    def __init__(self):
        self._lock = threading.Lock()
        self.changes: list[tuple[UUID, FormStatus, FormStatus]] = []

    def on_status_change(self, form_id, old_status, new_status):
        with self._lock:
            self.changes.append((form_id, old_status, new_status))

    def for_form(self, form_id: UUID) -> list[tuple[FormStatus, FormStatus]]:
        return [(old, new) for fid, old, new in self.changes if fid == form_id]


@pytest.fixture
def notifications():
    return RecordingListener()


@pytest.fixture
def form_locks():
    return FormLockRegistry()


@pytest.fixture
def workflow(session_factory, config, clock, notifications, form_locks):
    return WorkflowService(
        session_factory,
        config=config,
        clock=clock,
        listeners=[notifications],
        locks=form_locks,
    )


@pytest.fixture
def submitter() -> Actor:
    return Actor(user_id=uuid4(), role=Role.USER)


@pytest.fixture
def other_user() -> Actor:
    return Actor(user_id=uuid4(), role=Role.USER)


@pytest.fixture
def admin(workflow) -> Actor:
    account = workflow.register_staff("Administrator", Role.ADMIN)
    return Actor(user_id=account.id, role=Role.ADMIN)


@pytest.fixture
def staff(workflow) -> dict[Role, Actor]:
    """One registered account per staff role, as actors."""
    actors = {}
    for role, name in (
        (Role.STAFF1, "Asha (staff1)"),
        (Role.STAFF2, "Bilal (staff2)"),
        (Role.STAFF3, "Chitra (staff3)"),
        (Role.STAFF4, "Dev (staff4)"),
        (Role.STAFF5, "Esha (staff5)"),
    ):
        account = workflow.register_staff(name, role)
        actors[role] = Actor(user_id=account.id, role=role)
    return actors


@pytest.fixture
def sample_payloads() -> dict[FormType, dict]:
    return {form_type: dict(payload) for form_type, payload in SAMPLE_PAYLOADS.items()}


@pytest.fixture
def make_form(workflow, submitter):
    """Factory: create (and by default submit) a form of the given type."""

    def _make(
        form_type: FormType = FormType.SALE_DEED,
        *,
        submit: bool = True,
        payload: dict | None = None,
        owner: Actor | None = None,
    ):
        owner = owner or submitter
        data = dict(SAMPLE_PAYLOADS[form_type] if payload is None else payload)
        form = workflow.create(form_type, data, owner.user_id)
        if submit:
            form = workflow.submit(form.id, owner)
        return form

    return _make


@pytest.fixture
def approve_review(workflow, staff):
    """Approve every deed-pipeline review role of a form."""

    def _approve(form_id: UUID, roles=(Role.STAFF1, Role.STAFF2, Role.STAFF3)):
        for role in roles:
            workflow.decide(form_id, staff[role], approved=True)

    return _approve
