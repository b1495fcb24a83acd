"""
Test fixtures and helper utilities for standalone test scripts.
Provides common setup, teardown, and test data creation functions.
"""

import sys
import os
import json
import tempfile
from datetime import datetime, timedelta, timezone
from contextlib import asynccontextmanager, contextmanager
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from approval_workflow.config.settings import settings
from approval_workflow.core.event_bus import EventBus
from approval_workflow.core.workflow_config import WorkflowConfigService
from approval_workflow.models.database import Database
from approval_workflow.models.orm import (
    Order,
    Invoice,
    User,
    Employee,
    Vendor,
    NotificationMapping,
    WorkflowConfiguration,
)
from approval_workflow.models.schemas import (
    EntityType,
    EntitySnapshot,
    StageInfo,
    StageRejectionConfig,
    TriggeredBy,
    UserContext,
    WorkflowConfigurationData,
    WorkflowEventPayload,
    WorkflowEventType,
    WorkflowStage,
)
from approval_workflow.models.notification_schemas import (
    ChannelConfig,
    CompanyNotificationSettingsUpdate,
    EmailResult,
    NotificationChannel,
    NotificationMappingData,
    RecipientResolverType,
)
from approval_workflow.notifications.company_config import CompanyNotificationConfigService


COMPANY_ID = "COMP-001"
OTHER_COMPANY_ID = "COMP-002"


# ============================================================================
# Color codes for terminal output
# ============================================================================

GREEN = '\033[92m'
RED = '\033[91m'
YELLOW = '\033[93m'
BLUE = '\033[94m'
CYAN = '\033[96m'
RESET = '\033[0m'


# ============================================================================
# Test output helpers
# ============================================================================

def print_test_header(test_name):
    """Print formatted test header"""
    print(f"\n{'='*70}")
    print(f"{CYAN}Running: {test_name}{RESET}")
    print(f"{'='*70}\n")


def print_pass(test_name):
    """Print test pass message"""
    print(f"{GREEN}✓ PASS{RESET}: {test_name}")


def print_fail(test_name, error):
    """Print test failure message with error details"""
    print(f"{RED}✗ FAIL{RESET}: {test_name}")
    print(f"{RED}  Error: {error}{RESET}")


def print_info(message):
    """Print informational message"""
    print(f"{BLUE}ℹ {message}{RESET}")


def print_summary(tests_passed, tests_failed):
    """Print test summary"""
    print(f"\n{'='*70}")
    total = tests_passed + tests_failed
    if tests_failed == 0:
        print(f"{GREEN}✓ ALL TESTS PASSED{RESET}: {tests_passed}/{total}")
    else:
        print(f"{RED}✗ SOME TESTS FAILED{RESET}: {tests_passed} passed, {tests_failed} failed")
    print(f"{'='*70}\n")


async def run_tests(title, tests):
    """Run (name, coroutine function) pairs and print a summary. Returns an exit code."""
    import traceback

    print_test_header(title)
    tests_passed = 0
    tests_failed = 0

    for test_name, test_func in tests:
        try:
            await test_func()
            print_pass(test_name)
            tests_passed += 1
        except Exception as e:
            print_fail(test_name, str(e))
            traceback.print_exc()
            tests_failed += 1

    print_summary(tests_passed, tests_failed)
    return 0 if tests_failed == 0 else 1


# ============================================================================
# Database setup/teardown
# ============================================================================

def _remove_database_files(db_path):
    for suffix in ("", "-shm", "-wal"):
        path = f"{db_path}{suffix}"
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError:
                pass


async def create_test_database(db_path):
    """
    Create a fresh test database.
    Deletes existing database files and creates the schema.
    """
    _remove_database_files(db_path)
    db = Database(f"sqlite+aiosqlite:///{db_path}")
    await db.init()
    return db


async def cleanup_database(db: Database, db_path: Optional[str] = None):
    """Dispose the engine and remove the database files"""
    await db.close()
    if db_path:
        _remove_database_files(db_path)


# ============================================================================
# Settings overrides
# ============================================================================

@contextmanager
def override_settings(**values):
    """Temporarily change global settings, restoring them on exit"""
    previous = {name: getattr(settings, name) for name in values}
    try:
        for name, value in values.items():
            setattr(settings, name, value)
        yield settings
    finally:
        for name, value in previous.items():
            setattr(settings, name, value)


# ============================================================================
# Workflow configuration factories
# ============================================================================

def order_workflow_config(
    company_id=COMPANY_ID,
    config_id="WFC-ORDER-1",
    is_active=True,
    location_rejection: Optional[StageRejectionConfig] = None,
    company_rejection: Optional[StageRejectionConfig] = None,
    workflow_rejection: Optional[StageRejectionConfig] = None,
) -> WorkflowConfigurationData:
    """
    Two-stage order approval:
    LOCATION_APPROVAL (LOCATION_ADMIN, SITE_ADMIN) -> COMPANY_APPROVAL (COMPANY_ADMIN, terminal)
    """
    return WorkflowConfigurationData(
        id=config_id,
        company_id=company_id,
        entity_type=EntityType.ORDER,
        name="Order Approval",
        version=1,
        is_active=is_active,
        stages=[
            WorkflowStage(
                stage_key="LOCATION_APPROVAL",
                stage_name="Location Approval",
                order=1,
                allowed_roles=["LOCATION_ADMIN", "SITE_ADMIN"],
                rejection_config=location_rejection,
            ),
            WorkflowStage(
                stage_key="COMPANY_APPROVAL",
                stage_name="Company Approval",
                order=2,
                allowed_roles=["COMPANY_ADMIN"],
                is_terminal=True,
                rejection_config=company_rejection,
            ),
        ],
        status_on_submission="PENDING_LOCATION_APPROVAL",
        status_on_approval={
            "LOCATION_APPROVAL": "PENDING_COMPANY_APPROVAL",
            "COMPANY_APPROVAL": "APPROVED",
        },
        rejection_config=workflow_rejection,
    )


def invoice_workflow_config(company_id=COMPANY_ID, config_id="WFC-INV-1") -> WorkflowConfigurationData:
    """Single finance stage, no explicit status mappings"""
    return WorkflowConfigurationData(
        id=config_id,
        company_id=company_id,
        entity_type=EntityType.INVOICE,
        name="Invoice Approval",
        stages=[
            WorkflowStage(
                stage_key="INVOICE_FINANCE_APPROVAL",
                stage_name="Finance Approval",
                order=1,
                allowed_roles=["FINANCE_ADMIN"],
            ),
        ],
    )


async def seed_config(session, config: WorkflowConfigurationData) -> WorkflowConfigurationData:
    stored = await WorkflowConfigService(session).create_configuration(config)
    await session.commit()
    return stored


async def seed_raw_config(
    session, stages, config_id="WFC-ORDER-RAW", company_id=COMPANY_ID, entity_type=EntityType.ORDER,
):
    """Store a configuration row exactly as given, skipping validation"""
    session.add(WorkflowConfiguration(
        id=config_id,
        company_id=company_id,
        entity_type=entity_type.value,
        name="Hand-edited workflow",
        version=1,
        is_active=True,
        stages=json.dumps(stages),
        status_on_approval="{}",
        status_on_rejection="{}",
    ))
    await session.commit()


# ============================================================================
# Entity and directory factories
# ============================================================================

async def create_test_order(
    session,
    order_id="ORD-100001",
    company_id=COMPANY_ID,
    workflow_status="PENDING_LOCATION_APPROVAL",
    current_stage="LOCATION_APPROVAL",
    **fields,
) -> Order:
    values = dict(
        employee_id="EMP-1",
        employee_name="Asha Rao",
        employee_email="asha.rao@example.com",
        pr_number=f"PR-{order_id}",
        total_amount=12500.0,
        item_count=3,
        vendor_id="VEN-1",
        vendor_name="Acme Uniforms",
        location_id="LOC-1",
        location_name="Pune Plant",
        status="Awaiting approval",
    )
    values.update(fields)
    order = Order(
        id=order_id,
        company_id=company_id,
        workflow_status=workflow_status,
        current_stage=current_stage,
        **values,
    )
    session.add(order)
    await session.commit()
    return order


async def create_test_invoice(
    session,
    invoice_id="INV-200001",
    company_id=COMPANY_ID,
    workflow_status="PENDING_APPROVAL",
    current_stage=None,
    **fields,
) -> Invoice:
    values = dict(
        invoice_number=f"NUM-{invoice_id}",
        invoice_amount=4000.0,
        vendor_id="VEN-1",
        vendor_name="Acme Uniforms",
        created_by="USR-REQ",
        created_by_name="Ravi Kumar",
        created_by_email="ravi.kumar@example.com",
        status="RAISED",
    )
    values.update(fields)
    invoice = Invoice(
        id=invoice_id,
        company_id=company_id,
        workflow_status=workflow_status,
        current_stage=current_stage,
        **values,
    )
    session.add(invoice)
    await session.commit()
    return invoice


async def create_test_user(
    session,
    user_id,
    role,
    email=None,
    company_id=COMPANY_ID,
    location_id=None,
    location_ids: Optional[List[str]] = None,
    is_active=True,
    name=None,
) -> User:
    import json

    user = User(
        id=user_id,
        company_id=company_id,
        name=name or user_id.replace("-", " ").title(),
        email=email or f"{user_id.lower()}@example.com",
        role=role,
        location_id=location_id,
        location_ids=json.dumps(location_ids) if location_ids else None,
        is_active=is_active,
    )
    session.add(user)
    await session.commit()
    return user


async def create_test_employee(session, employee_id="EMP-1", email="asha.rao@example.com",
                               company_id=COMPANY_ID, name="Asha Rao") -> Employee:
    employee = Employee(id=employee_id, company_id=company_id, name=name, email=email)
    session.add(employee)
    await session.commit()
    return employee


async def create_test_vendor(session, vendor_id="VEN-1", email=None, contact_email=None,
                             name="Acme Uniforms") -> Vendor:
    vendor = Vendor(id=vendor_id, name=name, email=email, contact_email=contact_email)
    session.add(vendor)
    await session.commit()
    return vendor


async def seed_order_approvers(session, company_id=COMPANY_ID):
    """One approver per order stage role, all at LOC-1"""
    await create_test_user(session, "USR-LOC", "LOCATION_ADMIN", "loc.admin@example.com",
                           company_id=company_id, location_id="LOC-1")
    await create_test_user(session, "USR-CA", "COMPANY_ADMIN", "company.admin@example.com",
                           company_id=company_id)


# ============================================================================
# Notification factories
# ============================================================================

async def create_test_mapping(
    session,
    mapping_id,
    event_type: WorkflowEventType,
    resolvers: List[RecipientResolverType],
    template_key="default",
    channels: Optional[List[ChannelConfig]] = None,
    **fields,
) -> NotificationMapping:
    data = NotificationMappingData(
        id=mapping_id,
        event_type=event_type,
        recipient_resolvers=resolvers,
        channels=channels or [
            ChannelConfig(channel=NotificationChannel.EMAIL, template_key=template_key)
        ],
        **fields,
    )
    row = NotificationMapping.from_data(data)
    session.add(row)
    await session.commit()
    return row


async def set_company_config(session, company_id=COMPANY_ID, cache=None, **fields):
    service = CompanyNotificationConfigService(session, cache)
    return await service.upsert(
        company_id, CompanyNotificationSettingsUpdate(**fields), updated_by="USR-TEST"
    )


def make_event(
    event_type=WorkflowEventType.ENTITY_SUBMITTED,
    entity_id="ORD-100001",
    entity_type=EntityType.ORDER,
    company_id=COMPANY_ID,
    current_stage="LOCATION_APPROVAL",
    previous_stage=None,
    current_status="PENDING_LOCATION_APPROVAL",
    previous_status=None,
    triggered_by: Optional[TriggeredBy] = None,
    snapshot: Optional[EntitySnapshot] = None,
    stage_info: Optional[StageInfo] = None,
    next_stage_info: Optional[StageInfo] = None,
    event_id="WFE-TEST-1",
    **fields,
) -> WorkflowEventPayload:
    """Workflow event with a realistic order snapshot"""
    return WorkflowEventPayload(
        event_id=event_id,
        event_type=event_type,
        company_id=company_id,
        entity_type=entity_type,
        entity_id=entity_id,
        current_stage=current_stage,
        previous_stage=previous_stage,
        current_status=current_status,
        previous_status=previous_status,
        triggered_by=triggered_by or TriggeredBy(
            user_id="EMP-1", user_name="Asha Rao", user_role="REQUESTOR",
            user_email="asha.rao@example.com",
        ),
        entity_snapshot=snapshot or EntitySnapshot(
            display_id=f"PR-{entity_id}",
            created_by="EMP-1",
            created_by_name="Asha Rao",
            created_by_email="asha.rao@example.com",
            total_amount=12500.0,
            item_count=3,
            vendor_id="VEN-1",
            vendor_name="Acme Uniforms",
            location_id="LOC-1",
            location_name="Pune Plant",
        ),
        stage_info=stage_info,
        next_stage_info=next_stage_info,
        **fields,
    )


# ============================================================================
# Collaborator doubles
# ============================================================================

class MockEmailSender:
    """Records every send; can be told to fail or raise"""

    def __init__(self, fail=False, raise_error=False):
        self.sent = []
        self.fail = fail
        self.raise_error = raise_error

    async def send_email(self, to, subject, body, from_name=None, cc=None, bcc=None):
        if self.raise_error:
            raise RuntimeError("mail transport exploded")
        self.sent.append({
            "to": to, "subject": subject, "body": body,
            "from_name": from_name, "cc": cc, "bcc": bcc,
        })
        if self.fail:
            return EmailResult(success=False, error="Mail API returned 503", error_code="HTTP_ERROR")
        return EmailResult(success=True, message_id=f"msg-{len(self.sent)}")

    def count(self):
        return len(self.sent)

    def recipients(self):
        return [message["to"] for message in self.sent]


class FixedClock:
    """Callable clock returning an aware datetime that only moves when told to"""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds=0, minutes=0, hours=0):
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes, hours=hours)
        return self.now


def user_context(role, user_id=None, company_id=COMPANY_ID, name=None, email=None) -> UserContext:
    return UserContext(
        company_id=company_id,
        user_id=user_id or f"USR-{role}",
        user_role=role,
        user_name=name or role.replace("_", " ").title(),
        user_email=email,
    )


# ============================================================================
# Event bus helpers
# ============================================================================

class EventCollector:
    """Helper class to collect events for testing"""

    def __init__(self):
        self.events = []

    async def handler(self, event: WorkflowEventPayload):
        """Event handler that collects events"""
        self.events.append(event)

    def get_events(self):
        """Get collected events"""
        return self.events

    def clear(self):
        """Clear collected events"""
        self.events = []

    def count(self):
        """Get count of collected events"""
        return len(self.events)

    def event_types(self):
        return [event.event_type for event in self.events]

    def find_event(self, **kwargs):
        """Find event whose attributes match all criteria"""
        for event in self.events:
            if all(getattr(event, key, None) == value for key, value in kwargs.items()):
                return event
        return None


# ============================================================================
# Test context managers
# ============================================================================

class TestContext:
    """Context manager for setting up test environment"""

    __test__ = False
    _context_counter = 0

    def __init__(self, db_path=None):
        # Generate unique database path for each context
        if db_path is None:
            TestContext._context_counter += 1
            import time
            db_path = os.path.join(
                tempfile.gettempdir(),
                f"test_approvals_{os.getpid()}_{TestContext._context_counter}_{int(time.time()*1000)}.db",
            )
        self.db_path = db_path
        self.db = None
        self.event_bus = None
        self.collector = EventCollector()

    async def __aenter__(self):
        """Setup test environment"""
        self.db = await create_test_database(self.db_path)
        self.event_bus = EventBus()
        self.event_bus.subscribe("*", self.collector.handler)
        await self.event_bus.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Cleanup test environment"""
        if self.event_bus:
            await self.event_bus.stop()

        if self.db:
            await cleanup_database(self.db, self.db_path)

    @asynccontextmanager
    async def get_session(self):
        """Get a new database session as an async context manager"""
        # Use the test database's session factory, not the global one
        session = self.db.session_factory()
        try:
            yield session
        finally:
            await session.close()

    async def drain_events(self):
        """Wait until every emitted event has reached its subscribers"""
        await self.event_bus.wait_until_idle()


# ============================================================================
# Assertion helpers
# ============================================================================

def assert_equal(actual, expected, message=""):
    """Assert two values are equal"""
    if actual != expected:
        raise AssertionError(
            f"{message}\nExpected: {expected}\nActual: {actual}"
        )


def assert_not_equal(actual, expected, message=""):
    """Assert two values are not equal"""
    if actual == expected:
        raise AssertionError(
            f"{message}\nExpected values to be different, but both are: {actual}"
        )


def assert_true(condition, message=""):
    """Assert condition is true"""
    if not condition:
        raise AssertionError(f"{message}\nExpected: True\nActual: False")


def assert_false(condition, message=""):
    """Assert condition is false"""
    if condition:
        raise AssertionError(f"{message}\nExpected: False\nActual: True")


def assert_in(item, container, message=""):
    """Assert item is in container"""
    if item not in container:
        raise AssertionError(
            f"{message}\nExpected {item} to be in {container}"
        )


def assert_not_in(item, container, message=""):
    """Assert item is not in container"""
    if item in container:
        raise AssertionError(
            f"{message}\nExpected {item} to not be in {container}"
        )


def assert_is_none(value, message=""):
    if value is not None:
        raise AssertionError(f"{message}\nExpected: None\nActual: {value}")
