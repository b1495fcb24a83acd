"""
Workflow notification orchestrator.

Subscribes to every workflow event and turns it into notifications:
load mappings, check conditions, resolve recipients, pick and render a
template, dispatch. Nothing raised here ever reaches the workflow engine;
failures end up in the result's error list and in notification_logs.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List, Optional
import time
import structlog

from approval_workflow.config.settings import settings
from approval_workflow.core.event_bus import EventBus, WILDCARD
from approval_workflow.models.database import Database
from approval_workflow.models.orm import NotificationMapping
from approval_workflow.models.schemas import WorkflowEventPayload
from approval_workflow.models.notification_schemas import (
    DispatchOutcome,
    NotificationMappingData,
    OrchestrationResult,
)
from approval_workflow.notifications.company_config import (
    CompanyConfigCache,
    CompanyNotificationConfigService,
)
from approval_workflow.notifications.dispatcher import EmailSender, NotificationDispatcher
from approval_workflow.notifications.recipient_resolver import RecipientResolver
from approval_workflow.notifications.templates import (
    TemplateStore,
    build_template_context,
    render_message,
)

logger = structlog.get_logger()


def business_key_for(event: WorkflowEventPayload) -> str:
    """Identity of the state change an event announces, for duplicate detection"""
    return (
        f"{event.entity_type.value}:{event.entity_id}:"
        f"{event.current_stage or '-'}:{event.current_status}"
    )


def mapping_conditions_met(mapping: NotificationMappingData, event: WorkflowEventPayload) -> bool:
    conditions = mapping.conditions
    if conditions is None:
        return True

    if conditions.min_amount is not None:
        if (event.entity_snapshot.total_amount or 0) < conditions.min_amount:
            return False

    if conditions.entity_statuses and event.current_status not in conditions.entity_statuses:
        return False

    if conditions.roles and event.triggered_by.user_role not in conditions.roles:
        return False

    return True


async def load_notification_mappings(
    db: AsyncSession, event: WorkflowEventPayload
) -> List[NotificationMappingData]:
    """
    Active mappings for the event: company-specific rows before wildcard
    rows, then by descending priority. A mapping bound to a stage only
    applies when the event's current stage matches it.
    """
    result = await db.execute(
        select(NotificationMapping).where(
            NotificationMapping.is_active.is_(True),
            NotificationMapping.event_type == event.event_type.value,
            NotificationMapping.company_id.in_([event.company_id, "*"]),
            NotificationMapping.entity_type.in_([event.entity_type.value, "*"]),
        )
    )
    mappings = [row.to_data() for row in result.scalars().all()]
    mappings = [m for m in mappings if not m.stage_key or m.stage_key == event.current_stage]
    mappings.sort(key=lambda m: (m.company_id == "*", -m.priority, m.id))
    return mappings


class NotificationOrchestrator:
    """
    Event bus subscriber that owns a session per event.

    The company config cache lives as long as the orchestrator so it is
    shared across events and with the admin API, which invalidates it.
    """

    def __init__(
        self,
        db: Database,
        email_sender: EmailSender,
        config_cache: Optional[CompanyConfigCache] = None,
        clock=None,
    ):
        self.db = db
        self.email_sender = email_sender
        self.config_cache = config_cache or CompanyConfigCache()
        self._clock = clock
        self._unsubscribe = None
        self.processed = 0

    def register(self, event_bus: EventBus):
        """Subscribe to every workflow event type"""
        self._unsubscribe = event_bus.subscribe(WILDCARD, self.handle_event)
        logger.info("notification_orchestrator_registered")

    def unregister(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    async def handle_event(self, event: WorkflowEventPayload):
        try:
            await self.process_event(event)
        except Exception as e:
            logger.error(
                "notification_orchestration_crashed",
                event_id=event.event_id,
                error=str(e),
                exc_info=True,
            )

    async def process_event(self, event: WorkflowEventPayload) -> OrchestrationResult:
        async with self.db.session() as session:
            return await self.process_with_session(session, event)

    async def process_with_session(
        self, session: AsyncSession, event: WorkflowEventPayload
    ) -> OrchestrationResult:
        started = time.monotonic()
        demo_mode = settings.notifications_demo_mode
        result = OrchestrationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            entity_type=event.entity_type.value,
            entity_id=event.entity_id,
            demo_mode=demo_mode,
        )
        log = logger.bind(event_id=event.event_id, event_type=event.event_type.value)

        if not settings.enable_email_notifications:
            log.debug("notifications_disabled")
            return result

        try:
            company_configs = CompanyNotificationConfigService(session, self.config_cache)
            if not await company_configs.is_event_enabled(event.company_id, event.event_type.value):
                log.info("notifications_disabled_for_company", company_id=event.company_id)
                return result

            mappings = await load_notification_mappings(session, event)
            result.mappings_found = len(mappings)
            if not mappings:
                log.debug("no_notification_mappings")
                return result

            dispatcher_kwargs = {"clock": self._clock} if self._clock else {}
            dispatcher = NotificationDispatcher(
                session, self.email_sender, company_configs, **dispatcher_kwargs
            )
            resolver = RecipientResolver(session)
            templates = TemplateStore(session)

            branding = await company_configs.get_branding(event.company_id)
            context = build_template_context(event, branding)
            business_key = business_key_for(event)

            for mapping in mappings:
                try:
                    await self._process_mapping(
                        mapping, event, result, resolver, templates, company_configs,
                        dispatcher, context, business_key, branding.brand_name, demo_mode,
                    )
                except Exception as e:
                    log.error("notification_mapping_failed", mapping_id=mapping.id, error=str(e), exc_info=True)
                    result.errors.append(f"Mapping {mapping.id} failed: {e}")

        except Exception as e:
            log.error("notification_orchestration_failed", error=str(e), exc_info=True)
            result.errors.append(f"Orchestration failed: {e}")

        self.processed += 1
        log.info(
            "notification_orchestration_complete",
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            mappings=result.mappings_found,
            sent=result.notifications_sent,
            failed=result.notifications_failed,
            skipped=result.notifications_skipped,
            queued=result.notifications_queued,
            errors=len(result.errors),
            demo_mode=demo_mode,
        )
        return result

    async def _process_mapping(
        self,
        mapping: NotificationMappingData,
        event: WorkflowEventPayload,
        result: OrchestrationResult,
        resolver: RecipientResolver,
        templates: TemplateStore,
        company_configs: CompanyNotificationConfigService,
        dispatcher: NotificationDispatcher,
        context: dict,
        business_key: str,
        brand_name: str,
        demo_mode: bool,
    ):
        if not mapping_conditions_met(mapping, event):
            logger.debug("notification_mapping_conditions_unmet", mapping_id=mapping.id)
            return

        exclude = []
        if mapping.exclude_action_performer and event.triggered_by.user_email:
            exclude.append(event.triggered_by.user_email)

        resolution = await resolver.resolve(
            mapping.recipient_resolvers,
            event,
            custom_recipients=mapping.custom_recipients,
            exclude_emails=exclude,
        )
        result.errors.extend(resolution.errors)
        result.recipients_resolved += len(resolution.recipients)

        for channel_config in mapping.channels:
            template = await templates.load(
                channel_config.template_key, event.event_type, channel_config.channel
            )
            template = await company_configs.apply_template_override(
                event.company_id, event.event_type.value, template
            )

            for recipient in resolution.recipients:
                values = dict(context, recipient_name=recipient.name, recipient_role=recipient.role)
                dispatched = await dispatcher.dispatch(
                    recipient=recipient,
                    message=render_message(template, values),
                    event_code=event.event_type.value,
                    company_id=event.company_id,
                    channel=channel_config.channel,
                    business_key=business_key,
                    event_id=event.event_id,
                    from_name=f"{brand_name} Notifications",
                    demo_mode=demo_mode,
                    diagnostics={
                        "mapping_id": mapping.id,
                        "entity_type": event.entity_type.value,
                        "entity_id": event.entity_id,
                        "template_key": channel_config.template_key,
                    },
                )
                result.results.append(dispatched)

                if dispatched.outcome in (DispatchOutcome.SENT, DispatchOutcome.DEMO):
                    result.notifications_sent += 1
                elif dispatched.outcome == DispatchOutcome.QUEUED:
                    result.notifications_queued += 1
                elif dispatched.outcome in (DispatchOutcome.DUPLICATE_SKIPPED, DispatchOutcome.DISABLED):
                    result.notifications_skipped += 1
                else:
                    result.notifications_failed += 1
                    if dispatched.error:
                        result.errors.append(dispatched.error)
