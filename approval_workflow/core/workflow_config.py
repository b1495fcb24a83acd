"""
Workflow configuration store.
The engine only reads configurations; create_configuration exists for
seeding and administration.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from datetime import datetime
from pydantic import ValidationError
from typing import Optional, List
import json
import structlog

from approval_workflow.models.orm import WorkflowConfiguration
from approval_workflow.models.schemas import WorkflowConfigurationData, EntityType

logger = structlog.get_logger()


class InvalidWorkflowConfigurationError(Exception):
    """Raised when a configuration fails structural validation"""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("Invalid workflow configuration: " + "; ".join(errors))


def validate_configuration(config: WorkflowConfigurationData) -> List[str]:
    """
    Return a list of cross-stage problems; empty means valid.

    Per-stage rules (order >= 1, non-empty roles) are enforced by
    WorkflowStage itself and surface from load_row.
    """
    errors = []

    if not config.stages:
        errors.append("Workflow must have at least one stage")
        return errors

    keys = [s.stage_key for s in config.stages]
    duplicate_keys = sorted({k for k in keys if keys.count(k) > 1})
    if duplicate_keys:
        errors.append(f"Duplicate stage keys: {', '.join(duplicate_keys)}")

    orders = [s.order for s in config.stages]
    duplicate_orders = sorted({o for o in orders if orders.count(o) > 1})
    if duplicate_orders:
        errors.append(f"Duplicate stage orders: {', '.join(str(o) for o in duplicate_orders)}")

    terminal = [s.stage_key for s in config.stages if s.is_terminal]
    if len(terminal) > 1:
        errors.append(f"More than one terminal stage: {', '.join(terminal)}")

    return errors


def load_row(row: WorkflowConfiguration) -> WorkflowConfigurationData:
    """Stored row -> validated configuration, or InvalidWorkflowConfigurationError"""
    try:
        return row.to_data()
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
        logger.error("workflow_configuration_unreadable", config_id=row.id, errors=errors)
        raise InvalidWorkflowConfigurationError(errors)


class WorkflowConfigService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_config(
        self, company_id: str, entity_type: EntityType
    ) -> Optional[WorkflowConfigurationData]:
        """
        Active configuration for (company, entity type).

        Falls back to the newest inactive version so callers can tell
        "inactive" apart from "missing".
        """
        entity_type = EntityType(entity_type)
        result = await self.db.execute(
            select(WorkflowConfiguration)
            .where(
                WorkflowConfiguration.company_id == company_id,
                WorkflowConfiguration.entity_type == entity_type.value,
            )
            .order_by(WorkflowConfiguration.is_active.desc(), WorkflowConfiguration.version.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return load_row(row)

    async def get_active_config(
        self, company_id: str, entity_type: EntityType
    ) -> Optional[WorkflowConfigurationData]:
        config = await self.get_config(company_id, entity_type)
        if config is None or not config.is_active:
            return None
        return config

    async def create_configuration(
        self, config: WorkflowConfigurationData
    ) -> WorkflowConfigurationData:
        """
        Store a configuration. Activating one deactivates any other active
        configuration for the same (company, entity type).
        """
        errors = validate_configuration(config)
        if errors:
            logger.warning(
                "workflow_configuration_rejected",
                company_id=config.company_id,
                entity_type=config.entity_type.value,
                errors=errors,
            )
            raise InvalidWorkflowConfigurationError(errors)

        if config.is_active:
            await self.db.execute(
                update(WorkflowConfiguration)
                .where(
                    WorkflowConfiguration.company_id == config.company_id,
                    WorkflowConfiguration.entity_type == config.entity_type.value,
                    WorkflowConfiguration.is_active.is_(True),
                )
                .values(is_active=False, updated_at=datetime.now().timestamp())
            )

        dumped = config.model_dump(mode="json")
        row = WorkflowConfiguration(
            id=config.id,
            company_id=config.company_id,
            entity_type=config.entity_type.value,
            name=config.name,
            version=config.version,
            is_active=config.is_active,
            stages=json.dumps(dumped["stages"]),
            status_on_submission=config.status_on_submission,
            status_on_approval=json.dumps(config.status_on_approval),
            status_on_rejection=json.dumps(config.status_on_rejection),
            rejection_config=(
                json.dumps(dumped["rejection_config"]) if config.rejection_config else None
            ),
        )
        self.db.add(row)
        await self.db.flush()

        logger.info(
            "workflow_configuration_created",
            config_id=row.id,
            company_id=config.company_id,
            entity_type=config.entity_type.value,
            version=config.version,
            stages=len(config.stages),
        )
        return row.to_data()
