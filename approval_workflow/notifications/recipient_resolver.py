"""
Recipient resolution for workflow notifications.

Each strategy maps a workflow event to zero or more contacts. Strategies
never raise for missing data; they return an empty list. The aggregate
resolve() deduplicates by lowercased email, drops excluded addresses and
collects per-strategy failures as non-fatal errors.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Awaitable, Callable, Dict, Iterable, List, Optional
import re
import structlog

from approval_workflow.core.workflow_config import WorkflowConfigService
from approval_workflow.models.orm import Employee, User, Vendor
from approval_workflow.models.schemas import WorkflowConfigurationData, WorkflowEventPayload
from approval_workflow.models.notification_schemas import (
    CustomRecipient,
    RecipientResolverType,
    ResolutionResult,
    ResolvedRecipient,
)

logger = structlog.get_logger()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

LOCATION_ADMIN_ROLES = ["LOCATION_ADMIN", "SITE_ADMIN"]
# Holders of these roles serve every location of their company
COMPANY_WIDE_ROLES = ["COMPANY_ADMIN", "FINANCE_ADMIN"]


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email and EMAIL_PATTERN.match(email))


class RecipientResolver:
    """Resolves named recipient strategies against the user directory."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.configs = WorkflowConfigService(db)
        self._strategies: Dict[
            RecipientResolverType, Callable[..., Awaitable[List[ResolvedRecipient]]]
        ] = {
            RecipientResolverType.REQUESTOR: self.resolve_requestor,
            RecipientResolverType.ENTITY_OWNER: self.resolve_entity_owner,
            RecipientResolverType.CURRENT_STAGE_ROLE: self.resolve_current_stage_role,
            RecipientResolverType.PREVIOUS_STAGE_ROLE: self.resolve_previous_stage_role,
            RecipientResolverType.NEXT_STAGE_ROLE: self.resolve_next_stage_role,
            RecipientResolverType.ACTION_PERFORMER: self.resolve_action_performer,
            RecipientResolverType.COMPANY_ADMIN: self.resolve_company_admin,
            RecipientResolverType.LOCATION_ADMIN: self.resolve_location_admin,
            RecipientResolverType.FINANCE_ADMIN: self.resolve_finance_admin,
            RecipientResolverType.VENDOR: self.resolve_vendor,
            RecipientResolverType.CUSTOM: self.resolve_custom,
        }

    async def resolve(
        self,
        resolvers: Iterable[RecipientResolverType],
        event: WorkflowEventPayload,
        custom_recipients: Optional[List[CustomRecipient]] = None,
        exclude_emails: Optional[Iterable[str]] = None,
        workflow_config: Optional[WorkflowConfigurationData] = None,
    ) -> ResolutionResult:
        result = ResolutionResult()
        seen = set()
        excluded = {email.lower() for email in (exclude_emails or []) if email}

        if workflow_config is None:
            try:
                workflow_config = await self.configs.get_active_config(
                    event.company_id, event.entity_type
                )
            except Exception as e:
                result.errors.append(f"Workflow configuration lookup failed: {e}")

        for resolver in resolvers:
            try:
                strategy = self._strategies[RecipientResolverType(resolver)]
            except (KeyError, ValueError):
                result.errors.append(f"Unknown resolver: {resolver}")
                continue

            try:
                resolved = await strategy(
                    event,
                    workflow_config=workflow_config,
                    custom_recipients=custom_recipients or [],
                )
            except Exception as e:
                logger.warning(
                    "recipient_resolver_failed",
                    resolver=str(resolver),
                    event_id=event.event_id,
                    error=str(e),
                )
                result.errors.append(f"Resolver {resolver} failed: {e}")
                continue

            for recipient in resolved:
                email = (recipient.email or "").strip().lower()
                if email in seen:
                    result.skipped.append(f"Duplicate email skipped: {recipient.email}")
                    continue
                if email in excluded:
                    result.skipped.append(
                        f"Excluded email skipped: {recipient.email} (action performer)"
                    )
                    continue
                if not is_valid_email(email):
                    result.errors.append(f"Invalid email format: {recipient.email}")
                    continue

                seen.add(email)
                result.recipients.append(recipient.model_copy(update={"email": email}))

        logger.debug(
            "recipients_resolved",
            event_id=event.event_id,
            resolvers=[str(r) for r in resolvers],
            recipients=len(result.recipients),
            skipped=len(result.skipped),
            errors=len(result.errors),
        )
        return result

    # ========================================================================
    # Snapshot-based strategies
    # ========================================================================

    async def resolve_requestor(self, event: WorkflowEventPayload, **_) -> List[ResolvedRecipient]:
        snapshot = event.entity_snapshot
        if snapshot.created_by_email and snapshot.created_by_name:
            return [
                ResolvedRecipient(
                    email=snapshot.created_by_email,
                    name=snapshot.created_by_name,
                    role="REQUESTOR",
                    user_id=snapshot.created_by,
                    resolved_by=RecipientResolverType.REQUESTOR,
                )
            ]

        if not snapshot.created_by:
            return []

        employee = await self._lookup_employee(snapshot.created_by, event.company_id)
        if employee is None or not employee.email:
            return []
        return [
            ResolvedRecipient(
                email=employee.email,
                name=employee.name,
                role="REQUESTOR",
                user_id=employee.id,
                resolved_by=RecipientResolverType.REQUESTOR,
            )
        ]

    async def resolve_entity_owner(self, event: WorkflowEventPayload, **kwargs) -> List[ResolvedRecipient]:
        # The owner is the requestor for every current entity kind
        return [
            recipient.model_copy(update={"resolved_by": RecipientResolverType.ENTITY_OWNER})
            for recipient in await self.resolve_requestor(event, **kwargs)
        ]

    async def resolve_action_performer(
        self, event: WorkflowEventPayload, **_
    ) -> List[ResolvedRecipient]:
        performer = event.triggered_by
        if performer.user_email:
            return [
                ResolvedRecipient(
                    email=performer.user_email,
                    name=performer.user_name or performer.user_id,
                    role=performer.user_role,
                    user_id=performer.user_id,
                    resolved_by=RecipientResolverType.ACTION_PERFORMER,
                )
            ]

        user = await self._lookup_user(performer.user_id, event.company_id)
        if user is None:
            return []
        return [
            ResolvedRecipient(
                email=user.email,
                name=user.name or performer.user_name,
                role=performer.user_role,
                user_id=performer.user_id,
                resolved_by=RecipientResolverType.ACTION_PERFORMER,
            )
        ]

    async def resolve_vendor(self, event: WorkflowEventPayload, **_) -> List[ResolvedRecipient]:
        vendor_id = event.entity_snapshot.vendor_id
        if not vendor_id:
            return []

        result = await self.db.execute(select(Vendor).where(Vendor.id == vendor_id))
        vendor = result.scalar_one_or_none()
        email = (vendor.email or vendor.contact_email) if vendor else None
        if not email:
            return []
        return [
            ResolvedRecipient(
                email=email,
                name=vendor.name,
                role="VENDOR",
                user_id=vendor.id,
                resolved_by=RecipientResolverType.VENDOR,
            )
        ]

    async def resolve_custom(
        self, event: WorkflowEventPayload, custom_recipients: List[CustomRecipient] = None, **_
    ) -> List[ResolvedRecipient]:
        return [
            ResolvedRecipient(
                email=recipient.email,
                name=recipient.name or "Custom Recipient",
                role=recipient.role or "CUSTOM",
                resolved_by=RecipientResolverType.CUSTOM,
            )
            for recipient in custom_recipients or []
        ]

    # ========================================================================
    # Role-based strategies
    # ========================================================================

    async def resolve_current_stage_role(
        self, event: WorkflowEventPayload, workflow_config: WorkflowConfigurationData = None, **_
    ) -> List[ResolvedRecipient]:
        if workflow_config is None or not event.current_stage:
            return []
        stage = workflow_config.get_stage(event.current_stage)
        if stage is None:
            return []
        return await self.users_by_roles(
            stage.allowed_roles,
            event.company_id,
            event.entity_snapshot.location_id,
            RecipientResolverType.CURRENT_STAGE_ROLE,
        )

    async def resolve_next_stage_role(
        self, event: WorkflowEventPayload, workflow_config: WorkflowConfigurationData = None, **_
    ) -> List[ResolvedRecipient]:
        if event.next_stage_info is not None:
            roles = event.next_stage_info.allowed_roles
        else:
            if workflow_config is None or not event.current_stage:
                return []
            next_stage = workflow_config.next_stage(event.current_stage)
            if next_stage is None:
                return []
            roles = next_stage.allowed_roles

        return await self.users_by_roles(
            roles,
            event.company_id,
            event.entity_snapshot.location_id,
            RecipientResolverType.NEXT_STAGE_ROLE,
        )

    async def resolve_previous_stage_role(
        self, event: WorkflowEventPayload, workflow_config: WorkflowConfigurationData = None, **_
    ) -> List[ResolvedRecipient]:
        if workflow_config is None or not event.previous_stage:
            return []
        stage = workflow_config.get_stage(event.previous_stage)
        if stage is None:
            return []
        return await self.users_by_roles(
            stage.allowed_roles,
            event.company_id,
            event.entity_snapshot.location_id,
            RecipientResolverType.PREVIOUS_STAGE_ROLE,
        )

    async def resolve_company_admin(self, event: WorkflowEventPayload, **_) -> List[ResolvedRecipient]:
        return await self.users_by_roles(
            ["COMPANY_ADMIN"], event.company_id, None, RecipientResolverType.COMPANY_ADMIN
        )

    async def resolve_location_admin(self, event: WorkflowEventPayload, **_) -> List[ResolvedRecipient]:
        # Without a location on the entity every location admin of the company is notified
        return await self.users_by_roles(
            LOCATION_ADMIN_ROLES,
            event.company_id,
            event.entity_snapshot.location_id,
            RecipientResolverType.LOCATION_ADMIN,
        )

    async def resolve_finance_admin(self, event: WorkflowEventPayload, **_) -> List[ResolvedRecipient]:
        return await self.users_by_roles(
            ["FINANCE_ADMIN"], event.company_id, None, RecipientResolverType.FINANCE_ADMIN
        )

    async def users_by_roles(
        self,
        roles: List[str],
        company_id: str,
        location_id: Optional[str],
        resolved_by: RecipientResolverType,
    ) -> List[ResolvedRecipient]:
        """
        Every active holder of any of the roles.

        With a location, holders are limited to that location; company-wide
        roles are exempt from the location filter.
        """
        if not roles:
            return []

        result = await self.db.execute(
            select(User)
            .where(
                User.company_id == company_id,
                User.role.in_(list(roles)),
                User.is_active.is_(True),
            )
            .order_by(User.id)
        )

        recipients = []
        for user in result.scalars().all():
            if location_id and user.role not in COMPANY_WIDE_ROLES:
                if user.location_id != location_id and location_id not in user.location_ids_list:
                    continue
            recipients.append(
                ResolvedRecipient(
                    email=user.email,
                    name=user.name,
                    role=user.role,
                    user_id=user.id,
                    resolved_by=resolved_by,
                )
            )
        return recipients

    # ========================================================================
    # Directory lookups
    # ========================================================================

    async def _lookup_employee(self, employee_id: str, company_id: str) -> Optional[Employee]:
        result = await self.db.execute(
            select(Employee).where(Employee.id == employee_id, Employee.company_id == company_id)
        )
        return result.scalar_one_or_none()

    async def _lookup_user(self, user_id: str, company_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id, User.company_id == company_id)
        )
        return result.scalar_one_or_none()
