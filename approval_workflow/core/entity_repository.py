"""
Entity repository abstraction.
Adapts orders, GRNs and invoices to the single contract the workflow engine uses.

New entity kinds plug in through register_entity_repository(); the engine
never branches on the entity type itself.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from datetime import datetime
from typing import Optional, Dict, Any, Type, FrozenSet
import re
import structlog

from approval_workflow.models.orm import Order, GoodsReceipt, Invoice
from approval_workflow.models.schemas import (
    EntityType,
    WorkflowEntity,
    WorkflowStateUpdate,
    EntitySnapshot,
)

logger = structlog.get_logger()


class ConcurrentModificationError(Exception):
    """Raised when a conditional workflow update matched no row"""

    pass


class UnsupportedEntityTypeError(ValueError):
    """Raised when no repository is registered for an entity type"""

    pass


# ============================================================================
# Base Repository
# ============================================================================


class EntityRepository:
    """
    Shared read/update logic for entity tables carrying the workflow-state mixin.

    Subclasses set the ORM model, the side-field columns the engine may write,
    and the legacy status translation table.
    """

    entity_type: EntityType
    model = None
    side_field_columns: FrozenSet[str] = frozenset()
    legacy_status_map: Dict[str, Dict[str, str]] = {}

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_id(self, entity_id: str) -> Optional[WorkflowEntity]:
        row = await self._load_row(entity_id)
        if row is None:
            return None
        return self.to_entity(row)

    async def update_workflow_state(
        self, entity_id: str, state: WorkflowStateUpdate
    ) -> Optional[WorkflowEntity]:
        """
        Write status, stage, config linkage, side fields and legacy status.

        Returns None when the entity does not exist. Raises
        ConcurrentModificationError when preconditions are requested and the
        row no longer holds the expected stage and status.
        """
        row = await self._load_row(entity_id)
        if row is None:
            return None

        values: Dict[str, Any] = {
            "workflow_status": state.status,
            "current_stage": state.current_stage,
            "updated_at": datetime.now().timestamp(),
        }
        if state.workflow_config_id:
            values["workflow_config_id"] = state.workflow_config_id
        if state.workflow_version is not None:
            values["workflow_version"] = state.workflow_version

        ignored = sorted(set(state.side_fields) - self.side_field_columns)
        if ignored:
            logger.warning(
                "side_fields_ignored",
                entity_type=self.entity_type.value,
                entity_id=row.id,
                fields=ignored,
            )
        values.update(
            {k: v for k, v in state.side_fields.items() if k in self.side_field_columns}
        )
        values.update(self.legacy_status_fields(state.status))

        stmt = update(self.model).where(self.model.id == row.id)
        if state.check_preconditions:
            stmt = stmt.where(_matches(self.model.current_stage, state.expected_stage))
            stmt = stmt.where(_matches(self.model.workflow_status, state.expected_status))

        result = await self.db.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            logger.warning(
                "concurrent_modification_detected",
                entity_type=self.entity_type.value,
                entity_id=row.id,
                expected_stage=state.expected_stage,
                expected_status=state.expected_status,
            )
            raise ConcurrentModificationError(
                f"{self.entity_type.value} {row.id} was modified concurrently. "
                f"Expected stage {state.expected_stage}, status {state.expected_status}."
            )

        await self.db.refresh(row)

        logger.info(
            "entity_workflow_state_updated",
            entity_type=self.entity_type.value,
            entity_id=row.id,
            status=state.status,
            current_stage=state.current_stage,
        )
        return self.to_entity(row)

    def get_entity_snapshot(self, entity: WorkflowEntity) -> EntitySnapshot:
        raise NotImplementedError

    def legacy_status_fields(self, status: str) -> Dict[str, str]:
        """Columns to write so pre-workflow screens keep showing a sensible status"""
        return dict(self.legacy_status_map.get(status, {}))

    def to_entity(self, row) -> WorkflowEntity:
        raw = {column.name: getattr(row, column.name) for column in row.__table__.columns}
        return WorkflowEntity(
            id=row.id,
            company_id=row.company_id,
            entity_type=self.entity_type,
            current_stage=row.current_stage or None,
            status=row.workflow_status or row.status or "UNKNOWN",
            legacy_status=row.status,
            workflow_config_id=row.workflow_config_id,
            workflow_version=row.workflow_version,
            created_by=self._created_by(row),
            created_at=row.created_at,
            updated_at=row.updated_at,
            raw=raw,
        )

    async def _load_row(self, entity_id: str):
        result = await self.db.execute(select(self.model).where(self.model.id == entity_id))
        row = result.scalar_one_or_none()
        if row is None:
            row = await self._fallback_lookup(entity_id)
        return row

    async def _fallback_lookup(self, entity_id: str):
        """Kind-specific alternate key lookup. None by default."""
        return None

    def _created_by(self, row) -> Optional[str]:
        return getattr(row, "created_by", None)


def _matches(column, expected):
    return column.is_(None) if expected is None else column == expected


# ============================================================================
# Orders
# ============================================================================

SPLIT_ORDER_SUFFIX = re.compile(r"-\d{6}$")


class OrderRepository(EntityRepository):
    """
    Orders are split per vendor into child orders whose ids end in a
    six-digit vendor suffix. A parent id resolves to its first child.
    """

    entity_type = EntityType.ORDER
    model = Order
    side_field_columns = frozenset({
        "site_admin_approved_by",
        "site_admin_approved_at",
        "company_admin_approved_by",
        "company_admin_approved_at",
    })
    legacy_status_map = {
        "PENDING_LOCATION_APPROVAL": {"status": "Awaiting approval"},
        "PENDING_SITE_ADMIN_APPROVAL": {"status": "Awaiting approval"},
        "PENDING_COMPANY_APPROVAL": {"status": "Awaiting approval"},
        "APPROVED": {"status": "Awaiting fulfilment"},
        "REJECTED": {"status": "Awaiting approval"},
        "IN_FULFILMENT": {"status": "Awaiting fulfilment"},
        "DISPATCHED": {"status": "Dispatched"},
        "DELIVERED": {"status": "Delivered"},
    }

    async def _fallback_lookup(self, entity_id: str):
        if not entity_id or SPLIT_ORDER_SUFFIX.search(entity_id):
            return None
        result = await self.db.execute(
            select(Order).where(Order.parent_order_id == entity_id).order_by(Order.id).limit(1)
        )
        row = result.scalar_one_or_none()
        logger.info(
            "order_parent_lookup",
            entity_id=entity_id,
            found=row is not None,
        )
        return row

    def _created_by(self, row) -> Optional[str]:
        return row.employee_id

    def get_entity_snapshot(self, entity: WorkflowEntity) -> EntitySnapshot:
        raw = entity.raw
        return EntitySnapshot(
            display_id=raw.get("pr_number") or entity.id,
            created_by=raw.get("employee_id"),
            created_by_name=raw.get("employee_name"),
            created_by_email=raw.get("employee_email"),
            total_amount=raw.get("total_amount"),
            item_count=raw.get("item_count") or 0,
            vendor_id=raw.get("vendor_id"),
            vendor_name=raw.get("vendor_name"),
            location_id=raw.get("location_id"),
            location_name=raw.get("location_name"),
            created_at=raw.get("created_at"),
            extra={
                "pr_number": raw.get("pr_number"),
                "order_date": raw.get("order_date"),
                "parent_order_id": raw.get("parent_order_id"),
            },
        )


# ============================================================================
# Goods Receipts
# ============================================================================


class GoodsReceiptRepository(EntityRepository):
    entity_type = EntityType.GRN
    model = GoodsReceipt
    side_field_columns = frozenset({
        "approved_by",
        "approved_at",
        "grn_acknowledged_by_company",
        "grn_acknowledged_by",
        "grn_acknowledged_date",
    })
    legacy_status_map = {
        "RAISED": {"status": "CREATED", "grn_status": "RAISED"},
        "PENDING_APPROVAL": {"status": "CREATED", "grn_status": "RAISED"},
        "APPROVED": {"status": "ACKNOWLEDGED", "grn_status": "APPROVED"},
        "REJECTED": {"status": "CREATED", "grn_status": "RAISED"},
        "INVOICED": {"status": "INVOICED", "grn_status": "APPROVED"},
        "CLOSED": {"status": "CLOSED", "grn_status": "APPROVED"},
    }

    def to_entity(self, row) -> WorkflowEntity:
        entity = super().to_entity(row)
        if not row.workflow_status and row.grn_status:
            entity.status = row.grn_status
        return entity

    def get_entity_snapshot(self, entity: WorkflowEntity) -> EntitySnapshot:
        raw = entity.raw
        return EntitySnapshot(
            display_id=raw.get("grn_number") or entity.id,
            created_by=raw.get("created_by"),
            created_by_name=raw.get("created_by_name"),
            created_by_email=raw.get("created_by_email"),
            item_count=raw.get("item_count") or 0,
            vendor_id=raw.get("vendor_id"),
            vendor_name=raw.get("vendor_name"),
            location_id=raw.get("location_id"),
            created_at=raw.get("created_at"),
            extra={
                "grn_number": raw.get("grn_number"),
                "po_number": raw.get("po_number"),
            },
        )


# ============================================================================
# Invoices
# ============================================================================


class InvoiceRepository(EntityRepository):
    """Invoices may also be addressed by their display invoice number."""

    entity_type = EntityType.INVOICE
    model = Invoice
    side_field_columns = frozenset({"approved_by", "approved_at"})
    legacy_status_map = {
        "RAISED": {"status": "RAISED"},
        "PENDING_APPROVAL": {"status": "RAISED"},
        "APPROVED": {"status": "APPROVED"},
        "REJECTED": {"status": "REJECTED"},
        "PAID": {"status": "APPROVED"},
    }

    async def _fallback_lookup(self, entity_id: str):
        if not entity_id:
            return None
        result = await self.db.execute(
            select(Invoice).where(Invoice.invoice_number == entity_id).limit(1)
        )
        row = result.scalar_one_or_none()
        if row is not None:
            logger.info("invoice_number_lookup", entity_id=entity_id, resolved_id=row.id)
        return row

    def get_entity_snapshot(self, entity: WorkflowEntity) -> EntitySnapshot:
        raw = entity.raw
        return EntitySnapshot(
            display_id=raw.get("invoice_number") or entity.id,
            created_by=raw.get("created_by"),
            created_by_name=raw.get("created_by_name"),
            created_by_email=raw.get("created_by_email"),
            total_amount=raw.get("invoice_amount"),
            vendor_id=raw.get("vendor_id"),
            vendor_name=raw.get("vendor_name"),
            location_id=raw.get("location_id"),
            created_at=raw.get("created_at"),
            extra={
                "invoice_number": raw.get("invoice_number"),
                "vendor_invoice_number": raw.get("vendor_invoice_number"),
                "grn_id": raw.get("grn_id"),
                "po_number": raw.get("po_number"),
            },
        )


# ============================================================================
# Registry
# ============================================================================

_REPOSITORIES: Dict[EntityType, Type[EntityRepository]] = {}


def register_entity_repository(
    entity_type: EntityType, repository_cls: Type[EntityRepository]
) -> None:
    """Register the repository implementation for an entity kind"""
    if not issubclass(repository_cls, EntityRepository):
        raise TypeError(f"{repository_cls!r} is not an EntityRepository")
    _REPOSITORIES[entity_type] = repository_cls
    logger.info(
        "entity_repository_registered",
        entity_type=entity_type.value,
        repository=repository_cls.__name__,
    )


def get_entity_repository(entity_type: EntityType, db: AsyncSession) -> EntityRepository:
    repository_cls = _REPOSITORIES.get(EntityType(entity_type))
    if repository_cls is None:
        raise UnsupportedEntityTypeError(
            f"No repository registered for entity type: {EntityType(entity_type).value}"
        )
    return repository_cls(db)


def registered_entity_types():
    return list(_REPOSITORIES.keys())


register_entity_repository(EntityType.ORDER, OrderRepository)
register_entity_repository(EntityType.GRN, GoodsReceiptRepository)
register_entity_repository(EntityType.INVOICE, InvoiceRepository)
