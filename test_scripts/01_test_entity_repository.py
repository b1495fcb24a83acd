#!/usr/bin/env python3
"""
Test: Entity Repositories
Purpose: Verify the uniform entity contract over orders, GRNs and invoices

Tests:
- Order lookup, parent-id fallback and snapshot fields
- Legacy status columns written alongside workflow status
- Conditional updates detect concurrent modification
- GRN status derivation and invoice-number lookup
- Registry rejects unknown entity kinds
"""

import asyncio
import sys

from fixtures import (
    TestContext, create_test_order, create_test_invoice,
    assert_equal, assert_true, assert_is_none, run_tests,
)

from approval_workflow.core.entity_repository import (
    ConcurrentModificationError,
    EntityRepository,
    UnsupportedEntityTypeError,
    get_entity_repository,
    register_entity_repository,
)
from approval_workflow.models.orm import GoodsReceipt, Order
from approval_workflow.models.schemas import EntityType, WorkflowStateUpdate


async def test_order_lookup_and_snapshot():
    """Orders expose status, stage, owner and display snapshot"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_order(session, order_id="ORD-100001")

            repository = get_entity_repository(EntityType.ORDER, session)
            entity = await repository.find_by_id("ORD-100001")

            assert_equal(entity.status, "PENDING_LOCATION_APPROVAL")
            assert_equal(entity.current_stage, "LOCATION_APPROVAL")
            assert_equal(entity.created_by, "EMP-1", "Order owner is the employee")
            assert_equal(entity.legacy_status, "Awaiting approval")

            snapshot = repository.get_entity_snapshot(entity)
            assert_equal(snapshot.display_id, "PR-ORD-100001")
            assert_equal(snapshot.vendor_name, "Acme Uniforms")
            assert_equal(snapshot.total_amount, 12500.0)
            assert_equal(snapshot.created_by_email, "asha.rao@example.com")


async def test_missing_order_returns_none():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            repository = get_entity_repository(EntityType.ORDER, session)
            assert_is_none(await repository.find_by_id("ORD-DOES-NOT-EXIST"))


async def test_parent_order_resolves_to_first_child():
    """A parent order id falls back to its first vendor-split child"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_order(session, order_id="ORD-7-200002", parent_order_id="ORD-7")
            await create_test_order(session, order_id="ORD-7-100001", parent_order_id="ORD-7")

            repository = get_entity_repository(EntityType.ORDER, session)
            entity = await repository.find_by_id("ORD-7")
            assert_equal(entity.id, "ORD-7-100001", "Lowest child id should win")

            # Ids that already carry a vendor suffix never fall back
            assert_is_none(await repository.find_by_id("ORD-7-999999"))


async def test_update_writes_legacy_status_and_side_fields():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_order(session, order_id="ORD-100001")
            repository = get_entity_repository(EntityType.ORDER, session)

            updated = await repository.update_workflow_state(
                "ORD-100001",
                WorkflowStateUpdate(
                    status="APPROVED",
                    current_stage=None,
                    workflow_config_id="WFC-ORDER-1",
                    workflow_version=1,
                    side_fields={
                        "company_admin_approved_by": "USR-CA",
                        "grn_acknowledged_by": "ignored-for-orders",
                    },
                ),
            )
            await session.commit()

            assert_equal(updated.status, "APPROVED")
            assert_is_none(updated.current_stage)

        async with ctx.get_session() as session:
            row = await session.get(Order, "ORD-100001")
            assert_equal(row.status, "Awaiting fulfilment", "Legacy order status should follow")
            assert_equal(row.company_admin_approved_by, "USR-CA")
            assert_equal(row.workflow_config_id, "WFC-ORDER-1")


async def test_update_missing_entity_returns_none():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            repository = get_entity_repository(EntityType.ORDER, session)
            result = await repository.update_workflow_state(
                "ORD-404404", WorkflowStateUpdate(status="APPROVED")
            )
            assert_is_none(result)


async def test_conditional_update_detects_concurrent_change():
    """A precondition on stale stage/status matches no row"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_order(
                session, order_id="ORD-100001",
                workflow_status="PENDING_COMPANY_APPROVAL", current_stage="COMPANY_APPROVAL",
            )
            repository = get_entity_repository(EntityType.ORDER, session)

            raised = False
            try:
                await repository.update_workflow_state(
                    "ORD-100001",
                    WorkflowStateUpdate(
                        status="PENDING_COMPANY_APPROVAL",
                        current_stage="COMPANY_APPROVAL",
                        check_preconditions=True,
                        expected_stage="LOCATION_APPROVAL",
                        expected_status="PENDING_LOCATION_APPROVAL",
                    ),
                )
            except ConcurrentModificationError:
                raised = True
            assert_true(raised, "Stale precondition should raise")

            # Matching precondition succeeds
            updated = await repository.update_workflow_state(
                "ORD-100001",
                WorkflowStateUpdate(
                    status="APPROVED",
                    check_preconditions=True,
                    expected_stage="COMPANY_APPROVAL",
                    expected_status="PENDING_COMPANY_APPROVAL",
                ),
            )
            assert_equal(updated.status, "APPROVED")


async def test_grn_status_falls_back_to_grn_status():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            session.add(GoodsReceipt(
                id="GRN-1", company_id="COMP-001", grn_number="GRN-2024-01",
                status="CREATED", grn_status="RAISED", created_by="USR-VEN",
            ))
            await session.commit()

            repository = get_entity_repository(EntityType.GRN, session)
            entity = await repository.find_by_id("GRN-1")
            assert_equal(entity.status, "RAISED", "GRN without workflow status uses grn_status")
            assert_equal(repository.get_entity_snapshot(entity).display_id, "GRN-2024-01")

            await repository.update_workflow_state("GRN-1", WorkflowStateUpdate(status="APPROVED"))
            await session.commit()

        async with ctx.get_session() as session:
            row = await session.get(GoodsReceipt, "GRN-1")
            assert_equal(row.status, "ACKNOWLEDGED")
            assert_equal(row.grn_status, "APPROVED")


async def test_invoice_number_lookup():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_invoice(session, invoice_id="INV-200001", invoice_number="INV/24/0042")

            repository = get_entity_repository(EntityType.INVOICE, session)
            entity = await repository.find_by_id("INV/24/0042")
            assert_equal(entity.id, "INV-200001")
            assert_equal(entity.created_by, "USR-REQ")
            assert_equal(repository.get_entity_snapshot(entity).total_amount, 4000.0)


async def test_unregistered_entity_type():
    """Unknown kinds raise until a repository is registered"""
    raised = False
    try:
        get_entity_repository(EntityType.RETURN_REQUEST, None)
    except UnsupportedEntityTypeError:
        raised = True
    assert_true(raised, "RETURN_REQUEST has no repository by default")

    raised = False
    try:
        register_entity_repository(EntityType.RETURN_REQUEST, dict)
    except TypeError:
        raised = True
    assert_true(raised, "Only EntityRepository subclasses can be registered")

    assert_true(issubclass(type(get_entity_repository(EntityType.ORDER, None)), EntityRepository))


async def main():
    return await run_tests("Entity Repository Tests", [
        ("Order lookup and snapshot", test_order_lookup_and_snapshot),
        ("Missing order returns None", test_missing_order_returns_none),
        ("Parent order resolves to first child", test_parent_order_resolves_to_first_child),
        ("Update writes legacy status and side fields", test_update_writes_legacy_status_and_side_fields),
        ("Update of missing entity returns None", test_update_missing_entity_returns_none),
        ("Conditional update detects concurrent change", test_conditional_update_detects_concurrent_change),
        ("GRN status falls back to grn_status", test_grn_status_falls_back_to_grn_status),
        ("Invoice number lookup", test_invoice_number_lookup),
        ("Unregistered entity type", test_unregistered_entity_type),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
