"""
Database models using SQLAlchemy 2.0 async style.
JSON payloads are stored as serialized text, timestamps as epoch floats.
"""

from sqlalchemy import Column, String, Integer, Float, Text, Boolean, Index
from datetime import datetime
import uuid
import json

from approval_workflow.models.database import Base
from approval_workflow.models.schemas import (
    WorkflowConfigurationData,
    WorkflowStage,
    StageRejectionConfig,
)
from approval_workflow.models.notification_schemas import (
    NotificationMappingData,
    CompanyNotificationSettings,
)


def _now() -> float:
    return datetime.now().timestamp()


def _loads(value, default=None):
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


# ============================================================================
# Workflow Configuration
# ============================================================================


class WorkflowConfiguration(Base):
    """
    Stage definitions and status mappings for one (company, entity type).
    Read-only to the workflow engine.
    """

    __tablename__ = "workflow_configurations"

    id = Column(String, primary_key=True, default=lambda: f"WFC-{uuid.uuid4().hex[:12].upper()}")
    company_id = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    name = Column(String(200), nullable=False, default="")
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    stages = Column(Text, nullable=False, default="[]")  # JSON list of stages
    status_on_submission = Column(String(100), nullable=True)
    status_on_approval = Column(Text, nullable=False, default="{}")  # JSON stageKey -> status
    status_on_rejection = Column(Text, nullable=False, default="{}")  # JSON stageKey -> status
    rejection_config = Column(Text, nullable=True)  # JSON workflow-level rejection defaults
    created_at = Column(Float, nullable=False, default=_now)
    updated_at = Column(Float, nullable=False, default=_now)

    __table_args__ = (
        Index("idx_wfconfig_lookup", "company_id", "entity_type", "is_active"),
    )

    def to_data(self) -> WorkflowConfigurationData:
        rejection_config = _loads(self.rejection_config)
        return WorkflowConfigurationData(
            id=self.id,
            company_id=self.company_id,
            entity_type=self.entity_type,
            name=self.name or "",
            version=self.version,
            is_active=bool(self.is_active),
            stages=[WorkflowStage(**stage) for stage in _loads(self.stages, [])],
            status_on_submission=self.status_on_submission,
            status_on_approval=_loads(self.status_on_approval, {}),
            status_on_rejection=_loads(self.status_on_rejection, {}),
            rejection_config=StageRejectionConfig(**rejection_config) if rejection_config else None,
        )

    def to_dict(self):
        return self.to_data().model_dump(mode="json")


# ============================================================================
# Business Entities
# ============================================================================


class WorkflowStateMixin:
    """Columns the workflow engine owns on every entity table"""

    current_stage = Column(String(50), nullable=True)
    workflow_status = Column(String(100), nullable=True)
    workflow_config_id = Column(String, nullable=True)
    workflow_version = Column(Integer, nullable=True)
    created_at = Column(Float, nullable=False, default=_now)
    updated_at = Column(Float, nullable=False, default=_now)


class Order(WorkflowStateMixin, Base):
    """Purchase request / order"""

    __tablename__ = "orders"

    id = Column(String(50), primary_key=True)
    company_id = Column(String(50), nullable=False)
    parent_order_id = Column(String(50), nullable=True)
    employee_id = Column(String(50), nullable=True)
    employee_name = Column(String(200), nullable=True)
    employee_email = Column(String(255), nullable=True)
    pr_number = Column(String(50), nullable=True)
    total_amount = Column(Float, nullable=True)
    item_count = Column(Integer, nullable=True)
    vendor_id = Column(String(50), nullable=True)
    vendor_name = Column(String(200), nullable=True)
    location_id = Column(String(50), nullable=True)
    location_name = Column(String(200), nullable=True)
    order_date = Column(Float, nullable=True)
    status = Column(String(100), nullable=True)  # legacy order status

    site_admin_approved_by = Column(String(50), nullable=True)
    site_admin_approved_at = Column(Float, nullable=True)
    company_admin_approved_by = Column(String(50), nullable=True)
    company_admin_approved_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_orders_company_stage", "company_id", "current_stage"),
        Index("idx_orders_parent", "parent_order_id"),
    )


class GoodsReceipt(WorkflowStateMixin, Base):
    """Goods receipt note (GRN)"""

    __tablename__ = "grns"

    id = Column(String(50), primary_key=True)
    company_id = Column(String(50), nullable=False)
    grn_number = Column(String(50), nullable=True)
    po_number = Column(String(50), nullable=True)
    vendor_id = Column(String(50), nullable=True)
    vendor_name = Column(String(200), nullable=True)
    item_count = Column(Integer, nullable=True)
    location_id = Column(String(50), nullable=True)
    created_by = Column(String(50), nullable=True)
    created_by_name = Column(String(200), nullable=True)
    created_by_email = Column(String(255), nullable=True)
    status = Column(String(100), nullable=True)  # legacy grn status
    grn_status = Column(String(100), nullable=True)  # legacy grn sub-status

    approved_by = Column(String(50), nullable=True)
    approved_at = Column(Float, nullable=True)
    grn_acknowledged_by_company = Column(Boolean, nullable=False, default=False)
    grn_acknowledged_by = Column(String(50), nullable=True)
    grn_acknowledged_date = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_grns_company_stage", "company_id", "current_stage"),
    )


class Invoice(WorkflowStateMixin, Base):
    """Vendor invoice"""

    __tablename__ = "invoices"

    id = Column(String(50), primary_key=True)
    company_id = Column(String(50), nullable=False)
    invoice_number = Column(String(50), nullable=True)
    vendor_invoice_number = Column(String(100), nullable=True)
    invoice_amount = Column(Float, nullable=True)
    vendor_id = Column(String(50), nullable=True)
    vendor_name = Column(String(200), nullable=True)
    grn_id = Column(String(50), nullable=True)
    po_number = Column(String(50), nullable=True)
    location_id = Column(String(50), nullable=True)
    created_by = Column(String(50), nullable=True)
    created_by_name = Column(String(200), nullable=True)
    created_by_email = Column(String(255), nullable=True)
    status = Column(String(100), nullable=True)  # legacy invoice status

    approved_by = Column(String(50), nullable=True)
    approved_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_invoices_company_stage", "company_id", "current_stage"),
        Index("idx_invoices_number", "invoice_number"),
    )


# ============================================================================
# Audit Records
# ============================================================================


class ApprovalAudit(Base):
    """
    Immutable record of one successful approval.
    """

    __tablename__ = "approval_audits"

    id = Column(String(50), primary_key=True)
    company_id = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(50), nullable=False)
    workflow_config_id = Column(String, nullable=True)
    workflow_version = Column(Integer, nullable=True)
    from_stage = Column(String(50), nullable=True)
    to_stage = Column(String(50), nullable=True)
    is_terminal = Column(Boolean, nullable=False, default=False)
    approved_by = Column(String(50), nullable=False)
    approved_by_role = Column(String(50), nullable=False)
    approved_by_name = Column(String(200), nullable=True)
    previous_status = Column(String(100), nullable=True)
    new_status = Column(String(100), nullable=False)
    remarks = Column(Text, nullable=True)
    entity_snapshot = Column(Text, nullable=True)  # JSON
    action_metadata = Column(Text, nullable=True)  # JSON
    approved_at = Column(Float, nullable=False, default=_now)

    __table_args__ = (
        Index("idx_audits_entity", "company_id", "entity_type", "entity_id", "approved_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "workflow_config_id": self.workflow_config_id,
            "workflow_version": self.workflow_version,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "is_terminal": self.is_terminal,
            "approved_by": self.approved_by,
            "approved_by_role": self.approved_by_role,
            "approved_by_name": self.approved_by_name,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "remarks": self.remarks,
            "entity_snapshot": _loads(self.entity_snapshot, {}),
            "action_metadata": _loads(self.action_metadata, {}),
            "approved_at": self.approved_at,
        }


class RejectionRecord(Base):
    """
    Rejection facts are immutable once written.
    The resolution columns are filled in later by resubmission/cancellation.
    """

    __tablename__ = "rejection_records"

    id = Column(String(50), primary_key=True)
    company_id = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(50), nullable=False)
    workflow_config_id = Column(String, nullable=True)
    workflow_stage = Column(String(50), nullable=False)
    workflow_version = Column(Integer, nullable=True)
    action = Column(String(20), nullable=False)
    reason_code = Column(String(100), nullable=False)
    reason_label = Column(String(200), nullable=True)
    remarks = Column(Text, nullable=True)
    rejected_by = Column(String(50), nullable=False)
    rejected_by_role = Column(String(50), nullable=False)
    rejected_by_name = Column(String(200), nullable=True)
    previous_status = Column(String(100), nullable=True)
    previous_stage = Column(String(50), nullable=True)
    new_status = Column(String(100), nullable=False)
    entity_snapshot = Column(Text, nullable=True)  # JSON
    policy_flags = Column(Text, nullable=True)  # JSON: denormalized rejection policy
    action_metadata = Column(Text, nullable=True)  # JSON
    rejected_at = Column(Float, nullable=False, default=_now)

    # Resolution (mutable)
    is_resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(Float, nullable=True)
    resolved_by = Column(String(50), nullable=True)
    resolution_action = Column(String(20), nullable=True)
    resolution_remarks = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_rejections_entity", "company_id", "entity_type", "entity_id", "rejected_at"),
        Index("idx_rejections_unresolved", "company_id", "is_resolved"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "workflow_config_id": self.workflow_config_id,
            "workflow_stage": self.workflow_stage,
            "workflow_version": self.workflow_version,
            "action": self.action,
            "reason_code": self.reason_code,
            "reason_label": self.reason_label,
            "remarks": self.remarks,
            "rejected_by": self.rejected_by,
            "rejected_by_role": self.rejected_by_role,
            "rejected_by_name": self.rejected_by_name,
            "previous_status": self.previous_status,
            "previous_stage": self.previous_stage,
            "new_status": self.new_status,
            "entity_snapshot": _loads(self.entity_snapshot, {}),
            "policy_flags": _loads(self.policy_flags, {}),
            "action_metadata": _loads(self.action_metadata, {}),
            "rejected_at": self.rejected_at,
            "is_resolved": self.is_resolved,
            "resolved_at": self.resolved_at,
            "resolved_by": self.resolved_by,
            "resolution_action": self.resolution_action,
            "resolution_remarks": self.resolution_remarks,
        }


# ============================================================================
# Directory (recipient lookup)
# ============================================================================


class User(Base):
    """Administrative user holding a workflow role"""

    __tablename__ = "users"

    id = Column(String(50), primary_key=True)
    company_id = Column(String(50), nullable=False)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False)
    role = Column(String(50), nullable=False)
    location_id = Column(String(50), nullable=True)
    location_ids = Column(Text, nullable=True)  # JSON list of additional locations
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_users_company_role", "company_id", "role", "is_active"),
    )

    @property
    def location_ids_list(self):
        return _loads(self.location_ids, [])


class Employee(Base):
    __tablename__ = "employees"

    id = Column(String(50), primary_key=True)
    company_id = Column(String(50), nullable=False)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    location_id = Column(String(50), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class Vendor(Base):
    __tablename__ = "vendors"

    id = Column(String(50), primary_key=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    contact_email = Column(String(255), nullable=True)


# ============================================================================
# Notifications
# ============================================================================


class NotificationMapping(Base):
    """
    Routes a workflow event to recipients and channels.
    company_id / entity_type of "*" apply globally.
    """

    __tablename__ = "notification_mappings"

    id = Column(String(50), primary_key=True)
    company_id = Column(String(50), nullable=False, default="*")
    entity_type = Column(String(50), nullable=False, default="*")
    event_type = Column(String(50), nullable=False)
    stage_key = Column(String(50), nullable=True)
    recipient_resolvers = Column(Text, nullable=False)  # JSON list
    custom_recipients = Column(Text, nullable=True)  # JSON list
    exclude_action_performer = Column(Boolean, nullable=False, default=False)
    channels = Column(Text, nullable=False)  # JSON list
    conditions = Column(Text, nullable=True)  # JSON object
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)
    description = Column(String(500), nullable=True)
    created_at = Column(Float, nullable=False, default=_now)
    updated_at = Column(Float, nullable=False, default=_now)

    __table_args__ = (
        Index("idx_mappings_lookup", "event_type", "is_active", "company_id", "entity_type"),
    )

    def to_data(self) -> NotificationMappingData:
        return NotificationMappingData(
            id=self.id,
            company_id=self.company_id,
            entity_type=self.entity_type,
            event_type=self.event_type,
            stage_key=self.stage_key,
            recipient_resolvers=_loads(self.recipient_resolvers, []),
            custom_recipients=_loads(self.custom_recipients, []),
            exclude_action_performer=bool(self.exclude_action_performer),
            channels=_loads(self.channels, []),
            conditions=_loads(self.conditions),
            is_active=bool(self.is_active),
            priority=self.priority or 0,
            description=self.description,
        )

    @classmethod
    def from_data(cls, data: NotificationMappingData) -> "NotificationMapping":
        dumped = data.model_dump(mode="json")
        return cls(
            id=data.id,
            company_id=data.company_id,
            entity_type=data.entity_type,
            event_type=data.event_type.value,
            stage_key=data.stage_key,
            recipient_resolvers=json.dumps(dumped["recipient_resolvers"]),
            custom_recipients=json.dumps(dumped["custom_recipients"]),
            exclude_action_performer=data.exclude_action_performer,
            channels=json.dumps(dumped["channels"]),
            conditions=json.dumps(dumped["conditions"]) if data.conditions else None,
            is_active=data.is_active,
            priority=data.priority,
            description=data.description,
        )


class NotificationTemplate(Base):
    __tablename__ = "notification_templates"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    template_key = Column(String(100), nullable=False)
    channel = Column(String(20), nullable=False, default="EMAIL")
    event_type = Column(String(50), nullable=True)
    subject_template = Column(Text, nullable=False)
    body_template = Column(Text, nullable=False)
    language = Column(String(10), nullable=False, default="en")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False, default=_now)

    __table_args__ = (
        Index("idx_templates_key", "template_key", "channel", "is_active"),
        Index("idx_templates_event", "event_type", "channel", "is_active"),
    )


class NotificationLog(Base):
    """
    One row per attempted recipient, including deliberate skips.
    """

    __tablename__ = "notification_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(50), nullable=True)  # source workflow event
    event_code = Column(String(100), nullable=False)
    business_key = Column(String(255), nullable=True)
    queue_id = Column(String, nullable=True)
    company_id = Column(String(50), nullable=True)
    channel = Column(String(20), nullable=False, default="EMAIL")
    recipient_email = Column(String(255), nullable=False)  # lowercased
    recipient_role = Column(String(50), nullable=True)
    subject = Column(Text, nullable=True)
    status = Column(String(20), nullable=False)
    provider_message_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    sent_at = Column(Float, nullable=True)
    diagnostics = Column(Text, nullable=True)  # JSON
    created_at = Column(Float, nullable=False, default=_now)

    __table_args__ = (
        Index("idx_logs_dedupe", "event_code", "recipient_email", "business_key", "status", "sent_at"),
        Index("idx_logs_event", "event_id"),
        Index("idx_logs_created", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "event_id": self.event_id,
            "event_code": self.event_code,
            "business_key": self.business_key,
            "queue_id": self.queue_id,
            "company_id": self.company_id,
            "channel": self.channel,
            "recipient_email": self.recipient_email,
            "recipient_role": self.recipient_role,
            "subject": self.subject,
            "status": self.status,
            "provider_message_id": self.provider_message_id,
            "error_message": self.error_message,
            "sent_at": self.sent_at,
            "diagnostics": _loads(self.diagnostics, {}),
            "created_at": self.created_at,
        }


class NotificationQueueItem(Base):
    """
    Durable deferred send (quiet hours) with retry bookkeeping.
    """

    __tablename__ = "notification_queue"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(String(50), nullable=True)
    event_id = Column(String(50), nullable=True)
    event_code = Column(String(100), nullable=False)
    business_key = Column(String(255), nullable=True)
    channel = Column(String(20), nullable=False, default="EMAIL")
    recipient_email = Column(String(255), nullable=False)
    recipient_name = Column(String(200), nullable=True)
    recipient_role = Column(String(50), nullable=True)
    subject = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    from_name = Column(String(200), nullable=True)
    status = Column(String(20), nullable=False, default="PENDING")
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    scheduled_for = Column(Float, nullable=False)
    claimed_at = Column(Float, nullable=True)
    last_error = Column(Text, nullable=True)
    processed_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, default=_now)
    updated_at = Column(Float, nullable=False, default=_now)

    __table_args__ = (
        Index("idx_queue_due", "status", "scheduled_for"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "event_id": self.event_id,
            "event_code": self.event_code,
            "business_key": self.business_key,
            "channel": self.channel,
            "recipient_email": self.recipient_email,
            "recipient_role": self.recipient_role,
            "subject": self.subject,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "scheduled_for": self.scheduled_for,
            "claimed_at": self.claimed_at,
            "last_error": self.last_error,
            "processed_at": self.processed_at,
            "created_at": self.created_at,
        }


class CompanyNotificationConfig(Base):
    __tablename__ = "company_notification_configs"

    id = Column(String(60), primary_key=True)  # CNC-{company_id}
    company_id = Column(String(50), nullable=False, unique=True)
    notifications_enabled = Column(Boolean, nullable=False, default=True)
    event_configs = Column(Text, nullable=False, default="[]")  # JSON list
    brand_name = Column(String(200), nullable=True)
    brand_color = Column(String(20), nullable=True)
    logo_url = Column(String(500), nullable=True)
    cc_emails = Column(Text, nullable=False, default="[]")
    bcc_emails = Column(Text, nullable=False, default="[]")
    quiet_hours_enabled = Column(Boolean, nullable=False, default=False)
    quiet_hours_start = Column(String(5), nullable=True)  # "HH:MM"
    quiet_hours_end = Column(String(5), nullable=True)
    quiet_hours_timezone = Column(String(64), nullable=True)
    created_by = Column(String(50), nullable=True)
    updated_by = Column(String(50), nullable=True)
    created_at = Column(Float, nullable=False, default=_now)
    updated_at = Column(Float, nullable=False, default=_now)

    def to_data(self) -> CompanyNotificationSettings:
        return CompanyNotificationSettings(
            company_id=self.company_id,
            notifications_enabled=bool(self.notifications_enabled),
            event_configs=_loads(self.event_configs, []),
            brand_name=self.brand_name,
            brand_color=self.brand_color,
            logo_url=self.logo_url,
            cc_emails=_loads(self.cc_emails, []),
            bcc_emails=_loads(self.bcc_emails, []),
            quiet_hours_enabled=bool(self.quiet_hours_enabled),
            quiet_hours_start=self.quiet_hours_start,
            quiet_hours_end=self.quiet_hours_end,
            quiet_hours_timezone=self.quiet_hours_timezone,
        )
