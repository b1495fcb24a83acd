"""
Notification template loading and rendering.

Placeholders use the {{identifier}} syntax. Rendering never fails on
missing data: a token with no value (or an empty one) stays verbatim in
the output so the gap is visible to the reader instead of silently blank.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_
from datetime import datetime
from typing import Dict, List, Optional, Any
import re
import structlog

from approval_workflow.models.orm import NotificationTemplate
from approval_workflow.models.schemas import WorkflowEventPayload, WorkflowEventType
from approval_workflow.models.notification_schemas import (
    CompanyBranding,
    NotificationChannel,
    RenderedMessage,
)

logger = structlog.get_logger()

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")

ENTITY_TYPE_LABELS = {
    "ORDER": "Order",
    "GRN": "GRN",
    "INVOICE": "Invoice",
    "PURCHASE_ORDER": "Purchase Order",
    "RETURN_REQUEST": "Return Request",
}


# ============================================================================
# Formatting
# ============================================================================


def format_label(value: Optional[str]) -> str:
    """PENDING_COMPANY_APPROVAL -> Pending Company Approval"""
    if not value:
        return ""
    return " ".join(word[:1] + word[1:].lower() for word in value.split("_"))


def format_entity_type(entity_type: str) -> str:
    return ENTITY_TYPE_LABELS.get(entity_type, entity_type)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return f"{value:,.2f}"
    return str(value)


# ============================================================================
# Context and Rendering
# ============================================================================


def build_template_context(
    event: WorkflowEventPayload, branding: CompanyBranding
) -> Dict[str, str]:
    """Flatten an event plus company branding into template values"""
    snapshot = event.entity_snapshot
    triggered_by = event.triggered_by
    rejection = event.rejection

    current_stage_name = format_label(event.current_stage)
    for info in (event.next_stage_info, event.stage_info):
        if info is not None and info.stage_key == event.current_stage:
            current_stage_name = info.stage_name
            break

    context = {
        "event_type": event.event_type.value,
        "event_timestamp": datetime.fromtimestamp(event.event_timestamp).strftime("%d %b %Y, %H:%M"),
        "entity_type": format_entity_type(event.entity_type.value),
        "entity_id": event.entity_id,
        "entity_display_id": snapshot.display_id or event.entity_id,
        "current_stage": event.current_stage or "",
        "current_stage_name": current_stage_name,
        "previous_stage": event.previous_stage or "",
        "previous_stage_name": format_label(event.previous_stage),
        "current_status": format_label(event.current_status),
        "previous_status": format_label(event.previous_status),
        "rejected_by": triggered_by.user_name if rejection else "",
        "rejection_reason": (rejection.reason_label or rejection.reason_code) if rejection else "",
        "rejection_remarks": (rejection.remarks or "") if rejection else "",
        "approved_by": triggered_by.user_name,
        "approved_by_role": format_label(triggered_by.user_role),
        "requestor_name": snapshot.created_by_name or "",
        "requestor_email": snapshot.created_by_email or "",
        "company_id": event.company_id,
        "company_name": snapshot.company_name or branding.brand_name,
        "brand_name": branding.brand_name,
        "brand_color": branding.brand_color,
        "logo_url": branding.logo_url or "",
        "vendor_name": snapshot.vendor_name or "",
        "location_name": snapshot.location_name or "",
        "total_amount": _text(snapshot.total_amount),
        "item_count": _text(snapshot.item_count),
    }

    # Kind-specific snapshot fields are exposed as-is without shadowing the above
    for key, value in snapshot.extra.items():
        context.setdefault(key, _text(value))

    return context


def render_template(template: str, context: Dict[str, Any]) -> str:
    def substitute(match):
        value = context.get(match.group(1))
        if value is None or value == "":
            return match.group(0)
        return str(value)

    return PLACEHOLDER_PATTERN.sub(substitute, template or "")


def render_message(template: RenderedMessage, context: Dict[str, Any]) -> RenderedMessage:
    return RenderedMessage(
        subject=render_template(template.subject, context),
        body=render_template(template.body, context),
    )


def extract_placeholders(template: str) -> List[str]:
    return PLACEHOLDER_PATTERN.findall(template or "")


def find_missing_placeholders(template: str, context: Dict[str, Any]) -> List[str]:
    """Placeholders the context cannot fill, in order of first appearance"""
    missing = []
    for name in extract_placeholders(template):
        value = context.get(name)
        if (value is None or value == "") and name not in missing:
            missing.append(name)
    return missing


# ============================================================================
# Defaults
# ============================================================================


_FALLBACK_TEMPLATE = RenderedMessage(
    subject="{{entity_type}} {{entity_display_id}} - {{current_status}}",
    body="<p>{{entity_type}} {{entity_display_id}} status update: {{current_status}}</p>",
)

DEFAULT_TEMPLATES: Dict[WorkflowEventType, RenderedMessage] = {
    WorkflowEventType.ENTITY_SUBMITTED: RenderedMessage(
        subject="{{entity_type}} {{entity_display_id}} submitted for approval",
        body=(
            "<p>A new {{entity_type}} has been submitted for your approval.</p>"
            "<p><strong>{{entity_type}} ID:</strong> {{entity_display_id}}</p>"
            "<p><strong>Submitted by:</strong> {{requestor_name}}</p>"
            "<p><strong>Current Stage:</strong> {{current_stage_name}}</p>"
            "<p>Please review and take action.</p>"
        ),
    ),
    WorkflowEventType.ENTITY_RESUBMITTED: RenderedMessage(
        subject="{{entity_type}} {{entity_display_id}} resubmitted for approval",
        body=(
            "<p>{{entity_type}} {{entity_display_id}} has been corrected and resubmitted.</p>"
            "<p><strong>Submitted by:</strong> {{requestor_name}}</p>"
            "<p><strong>Current Stage:</strong> {{current_stage_name}}</p>"
        ),
    ),
    WorkflowEventType.ENTITY_APPROVED: RenderedMessage(
        subject="{{entity_type}} {{entity_display_id}} has been approved",
        body=(
            "<p>Your {{entity_type}} has been fully approved.</p>"
            "<p><strong>{{entity_type}} ID:</strong> {{entity_display_id}}</p>"
            "<p><strong>Approved by:</strong> {{approved_by}}</p>"
            "<p><strong>Status:</strong> {{current_status}}</p>"
        ),
    ),
    WorkflowEventType.ENTITY_APPROVED_AT_STAGE: RenderedMessage(
        subject="{{entity_type}} {{entity_display_id}} approved at {{previous_stage_name}}",
        body=(
            "<p>{{entity_type}} has been approved at the {{previous_stage_name}} stage.</p>"
            "<p><strong>{{entity_type}} ID:</strong> {{entity_display_id}}</p>"
            "<p><strong>Approved by:</strong> {{approved_by}}</p>"
            "<p>It now awaits {{current_stage_name}}.</p>"
        ),
    ),
    WorkflowEventType.ENTITY_REJECTED: RenderedMessage(
        subject="{{entity_type}} {{entity_display_id}} has been rejected",
        body=(
            "<p>Your {{entity_type}} has been rejected.</p>"
            "<p><strong>{{entity_type}} ID:</strong> {{entity_display_id}}</p>"
            "<p><strong>Rejected by:</strong> {{rejected_by}}</p>"
            "<p><strong>Reason:</strong> {{rejection_reason}}</p>"
            "<p><strong>Remarks:</strong> {{rejection_remarks}}</p>"
            "<p>Please review and resubmit if needed.</p>"
        ),
    ),
    WorkflowEventType.ENTITY_SENT_BACK: RenderedMessage(
        subject="{{entity_type}} {{entity_display_id}} sent back for correction",
        body=(
            "<p>{{entity_type}} {{entity_display_id}} was sent back by {{rejected_by}}.</p>"
            "<p><strong>Reason:</strong> {{rejection_reason}}</p>"
            "<p><strong>Remarks:</strong> {{rejection_remarks}}</p>"
        ),
    ),
    WorkflowEventType.APPROVAL_REMINDER: RenderedMessage(
        subject="Reminder: {{entity_type}} {{entity_display_id}} pending your approval",
        body=(
            "<p>This is a reminder that {{entity_type}} {{entity_display_id}} is pending your approval.</p>"
            "<p><strong>Submitted by:</strong> {{requestor_name}}</p>"
            "<p><strong>Current Stage:</strong> {{current_stage_name}}</p>"
        ),
    ),
}


def get_default_template(event_type: WorkflowEventType) -> RenderedMessage:
    return DEFAULT_TEMPLATES.get(WorkflowEventType(event_type), _FALLBACK_TEMPLATE)


# ============================================================================
# Template Store
# ============================================================================


class TemplateStore:
    """Looks up stored templates, falling back to the compiled-in defaults."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find(
        self,
        template_key: Optional[str] = None,
        event_code: Optional[str] = None,
        channel: NotificationChannel = NotificationChannel.EMAIL,
        language: str = "en",
    ) -> Optional[RenderedMessage]:
        """Stored template by key first, then by event code; None if neither exists"""
        conditions = []
        if template_key:
            conditions.append(NotificationTemplate.template_key == template_key)
        if event_code:
            conditions.append(NotificationTemplate.event_type == event_code)
        if not conditions:
            return None

        for condition in conditions:
            result = await self.db.execute(
                select(NotificationTemplate)
                .where(
                    condition,
                    NotificationTemplate.is_active.is_(True),
                    NotificationTemplate.channel == NotificationChannel(channel).value,
                    or_(
                        NotificationTemplate.language == language,
                        NotificationTemplate.language.is_(None),
                    ),
                )
                .order_by(NotificationTemplate.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row is not None:
                return RenderedMessage(subject=row.subject_template, body=row.body_template)
        return None

    async def load(
        self,
        template_key: str,
        event_type: WorkflowEventType,
        channel: NotificationChannel = NotificationChannel.EMAIL,
    ) -> RenderedMessage:
        try:
            template = await self.find(template_key, WorkflowEventType(event_type).value, channel)
        except Exception as e:
            logger.error(
                "template_lookup_failed",
                template_key=template_key,
                error=str(e),
                exc_info=True,
            )
            template = None

        if template is None:
            logger.debug("template_default_used", template_key=template_key, event_type=str(event_type))
            return get_default_template(event_type)
        return template
