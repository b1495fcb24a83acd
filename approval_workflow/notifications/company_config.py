"""
Company notification settings: master switch, per-event overrides,
branding and quiet hours.

Reads go through CompanyConfigCache, an explicit TTL cache with an
injectable clock. Every write invalidates the company's entry.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import json
import time
import structlog

from approval_workflow.config.settings import settings
from approval_workflow.models.orm import CompanyNotificationConfig
from approval_workflow.models.notification_schemas import (
    CompanyBranding,
    CompanyNotificationSettings,
    CompanyNotificationSettingsUpdate,
    EventConfigOverride,
    RenderedMessage,
)

logger = structlog.get_logger()


class CompanyConfigCache:
    """Per-company settings cache. Stores misses too, so absent configs are not re-queried."""

    def __init__(self, ttl_seconds: float = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = (
            settings.company_config_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        )
        self._clock = clock
        self._entries: Dict[str, Tuple[Optional[CompanyNotificationSettings], float]] = {}

    def get(self, company_id: str) -> Tuple[bool, Optional[CompanyNotificationSettings]]:
        """Returns (hit, value)"""
        entry = self._entries.get(company_id)
        if entry is None:
            return False, None
        value, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[company_id]
            return False, None
        return True, value

    def set(self, company_id: str, value: Optional[CompanyNotificationSettings]):
        self._entries[company_id] = (value, self._clock())

    def invalidate(self, company_id: str):
        self._entries.pop(company_id, None)

    def clear(self):
        self._entries.clear()


# ============================================================================
# Quiet Hours
# ============================================================================


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def _zone(config: CompanyNotificationSettings) -> ZoneInfo:
    name = config.quiet_hours_timezone or settings.default_quiet_hours_timezone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("quiet_hours_timezone_invalid", timezone=name, company_id=config.company_id)
        return ZoneInfo(settings.default_quiet_hours_timezone)


def _quiet_hours_active(config: Optional[CompanyNotificationSettings]) -> bool:
    return bool(
        config is not None
        and config.quiet_hours_enabled
        and config.quiet_hours_start
        and config.quiet_hours_end
    )


def is_within_quiet_hours(
    config: Optional[CompanyNotificationSettings], now: Optional[datetime] = None
) -> bool:
    """
    True when company-local time falls in [start, end).

    A window whose start is later than its end wraps past midnight,
    e.g. 22:00-08:00.
    """
    if not _quiet_hours_active(config):
        return False

    now = now or datetime.now(timezone.utc)
    local = now.astimezone(_zone(config))
    current = local.hour * 60 + local.minute
    start = _minutes(config.quiet_hours_start)
    end = _minutes(config.quiet_hours_end)

    if start > end:
        return current >= start or current < end
    return start <= current < end


def quiet_hours_end(
    config: Optional[CompanyNotificationSettings],
    now: Optional[datetime] = None,
    buffer_minutes: int = None,
) -> Optional[datetime]:
    """Next end of the quiet window after now, plus the buffer; timezone-aware"""
    if not _quiet_hours_active(config):
        return None

    if buffer_minutes is None:
        buffer_minutes = settings.quiet_hours_buffer_minutes

    now = now or datetime.now(timezone.utc)
    local = now.astimezone(_zone(config))
    current = local.hour * 60 + local.minute
    start = _minutes(config.quiet_hours_start)
    end = _minutes(config.quiet_hours_end)

    end_local = local.replace(hour=end // 60, minute=end % 60, second=0, microsecond=0)
    if start > end:
        if current >= start:
            end_local += timedelta(days=1)
    elif current >= end:
        end_local += timedelta(days=1)

    return end_local + timedelta(minutes=buffer_minutes)


# ============================================================================
# Service
# ============================================================================


class CompanyNotificationConfigService:
    def __init__(self, db: AsyncSession, cache: Optional[CompanyConfigCache] = None):
        self.db = db
        self.cache = cache or CompanyConfigCache()

    async def get(self, company_id: str) -> Optional[CompanyNotificationSettings]:
        """Company settings, or None when the company uses system defaults"""
        if not company_id:
            return None

        hit, cached = self.cache.get(company_id)
        if hit:
            return cached

        result = await self.db.execute(
            select(CompanyNotificationConfig).where(
                CompanyNotificationConfig.company_id == company_id
            )
        )
        row = result.scalar_one_or_none()
        value = row.to_data() if row else None
        self.cache.set(company_id, value)
        return value

    async def upsert(
        self,
        company_id: str,
        update: CompanyNotificationSettingsUpdate,
        updated_by: Optional[str] = None,
    ) -> CompanyNotificationSettings:
        result = await self.db.execute(
            select(CompanyNotificationConfig).where(
                CompanyNotificationConfig.company_id == company_id
            )
        )
        row = result.scalar_one_or_none()
        now = datetime.now().timestamp()

        if row is None:
            row = CompanyNotificationConfig(
                id=f"CNC-{company_id}",
                company_id=company_id,
                created_by=updated_by,
                created_at=now,
            )
            self.db.add(row)

        changes = update.model_dump(exclude_unset=True, mode="json")
        for field, value in changes.items():
            if field in ("event_configs", "cc_emails", "bcc_emails"):
                if field == "event_configs":
                    value = [
                        dict(item, event_code=item["event_code"].upper()) for item in value or []
                    ]
                value = json.dumps(value or [])
            setattr(row, field, value)

        # Columns with Python-side defaults are unset until flush on new rows
        for field, default in (("event_configs", "[]"), ("cc_emails", "[]"), ("bcc_emails", "[]")):
            if getattr(row, field) is None:
                setattr(row, field, default)
        if row.notifications_enabled is None:
            row.notifications_enabled = True
        if row.quiet_hours_enabled is None:
            row.quiet_hours_enabled = False

        row.updated_by = updated_by
        row.updated_at = now
        await self.db.commit()
        self.cache.invalidate(company_id)

        logger.info(
            "company_notification_config_saved",
            company_id=company_id,
            fields=sorted(changes.keys()),
            updated_by=updated_by,
        )
        return row.to_data()

    async def update_event_config(
        self,
        company_id: str,
        event_code: str,
        is_enabled: Optional[bool] = None,
        custom_subject: Optional[str] = None,
        custom_body: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> CompanyNotificationSettings:
        """Create or patch one event override, creating the company config if needed"""
        current = await self.get(company_id)
        overrides = list(current.event_configs) if current else []
        code = event_code.upper()

        for index, item in enumerate(overrides):
            if item.event_code.upper() == code:
                patch = {"event_code": code}
                if is_enabled is not None:
                    patch["is_enabled"] = is_enabled
                if custom_subject is not None:
                    patch["custom_subject"] = custom_subject
                if custom_body is not None:
                    patch["custom_body"] = custom_body
                overrides[index] = item.model_copy(update=patch)
                break
        else:
            overrides.append(
                EventConfigOverride(
                    event_code=code,
                    is_enabled=True if is_enabled is None else is_enabled,
                    custom_subject=custom_subject,
                    custom_body=custom_body,
                )
            )

        return await self.upsert(
            company_id,
            CompanyNotificationSettingsUpdate(event_configs=overrides),
            updated_by=updated_by,
        )

    async def are_notifications_enabled(self, company_id: str) -> bool:
        config = await self.get(company_id)
        return True if config is None else config.notifications_enabled

    async def is_event_enabled(self, company_id: str, event_code: str) -> bool:
        """Missing config or missing override means enabled"""
        if not company_id or not event_code:
            return True
        config = await self.get(company_id)
        if config is None:
            return True
        if not config.notifications_enabled:
            return False
        override = config.event_config(event_code)
        return True if override is None else override.is_enabled

    async def get_branding(self, company_id: str) -> CompanyBranding:
        config = await self.get(company_id)
        if config is None:
            return CompanyBranding(
                brand_name=settings.default_brand_name,
                brand_color=settings.default_brand_color,
            )
        return CompanyBranding(
            brand_name=config.brand_name or settings.default_brand_name,
            brand_color=config.brand_color or settings.default_brand_color,
            logo_url=config.logo_url,
            cc_emails=list(config.cc_emails),
            bcc_emails=list(config.bcc_emails),
        )

    async def apply_template_override(
        self, company_id: str, event_code: str, template: RenderedMessage
    ) -> RenderedMessage:
        """Company custom subject/body replace the corresponding template part"""
        config = await self.get(company_id)
        override = config.event_config(event_code) if config else None
        if override is None:
            return template
        return RenderedMessage(
            subject=override.custom_subject or template.subject,
            body=override.custom_body or template.body,
        )

    async def is_in_quiet_hours(self, company_id: str, now: Optional[datetime] = None) -> bool:
        try:
            return is_within_quiet_hours(await self.get(company_id), now)
        except Exception as e:
            logger.warning("quiet_hours_check_failed", company_id=company_id, error=str(e))
            return False

    async def get_quiet_hours_end(
        self, company_id: str, now: Optional[datetime] = None
    ) -> Optional[datetime]:
        try:
            return quiet_hours_end(await self.get(company_id), now)
        except Exception as e:
            logger.warning("quiet_hours_end_failed", company_id=company_id, error=str(e))
            return None
