#!/usr/bin/env python3
"""
Test: Recipient Resolver
Purpose: Verify recipient strategies, deduplication and exclusion
"""

import asyncio
import sys

from fixtures import (
    TestContext, OTHER_COMPANY_ID,
    order_workflow_config, seed_config, create_test_user, create_test_employee,
    create_test_vendor, make_event,
    assert_equal, assert_true, assert_in, run_tests,
)

from approval_workflow.models.notification_schemas import (
    CustomRecipient,
    RecipientResolverType as R,
)
from approval_workflow.models.schemas import EntitySnapshot, StageInfo, TriggeredBy, WorkflowEventType
from approval_workflow.notifications.recipient_resolver import RecipientResolver, is_valid_email


async def seed_directory(session):
    await create_test_user(session, "USR-LOC1", "LOCATION_ADMIN", "loc1@example.com", location_id="LOC-1")
    await create_test_user(session, "USR-LOC2", "LOCATION_ADMIN", "loc2@example.com", location_id="LOC-2")
    await create_test_user(session, "USR-SITE", "SITE_ADMIN", "site@example.com",
                           location_id="LOC-9", location_ids=["LOC-1", "LOC-3"])
    await create_test_user(session, "USR-CA", "COMPANY_ADMIN", "Company.Admin@Example.com", location_id="LOC-7")
    await create_test_user(session, "USR-OLD", "COMPANY_ADMIN", "old.admin@example.com", is_active=False)
    await create_test_user(session, "USR-FIN", "FINANCE_ADMIN", "finance@example.com")
    await create_test_user(session, "USR-X", "COMPANY_ADMIN", "other@example.com", company_id=OTHER_COMPANY_ID)


async def test_requestor_from_snapshot_and_directory():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_employee(session, "EMP-2", email="Ravi.K@Example.com", name="Ravi K")
            resolver = RecipientResolver(session)

            direct = await resolver.resolve([R.REQUESTOR], make_event())
            assert_equal([r.email for r in direct.recipients], ["asha.rao@example.com"])
            assert_equal(direct.recipients[0].role, "REQUESTOR")

            # Snapshot without contact details falls back to the employee directory
            looked_up = await resolver.resolve(
                [R.REQUESTOR], make_event(snapshot=EntitySnapshot(created_by="EMP-2"))
            )
            assert_equal([r.email for r in looked_up.recipients], ["ravi.k@example.com"])
            assert_equal(looked_up.recipients[0].name, "Ravi K")

            nobody = await resolver.resolve([R.REQUESTOR], make_event(snapshot=EntitySnapshot()))
            assert_equal(nobody.recipients, [])
            assert_equal(nobody.errors, [])


async def test_stage_roles_respect_location():
    """Stage role holders are limited to the entity's location; company-wide roles are not"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await seed_directory(session)
            resolver = RecipientResolver(session)

            current = await resolver.resolve([R.CURRENT_STAGE_ROLE], make_event())
            assert_equal(
                [r.user_id for r in current.recipients], ["USR-LOC1", "USR-SITE"],
                "LOC-2 admin is filtered out; SITE_ADMIN matches via location_ids",
            )

            next_stage = await resolver.resolve([R.NEXT_STAGE_ROLE], make_event())
            assert_equal([r.user_id for r in next_stage.recipients], ["USR-CA"])
            assert_equal(next_stage.recipients[0].email, "company.admin@example.com", "Emails are lowercased")

            # Explicit next-stage info on the event wins over the configuration
            finance_next = await resolver.resolve(
                [R.NEXT_STAGE_ROLE],
                make_event(next_stage_info=StageInfo(
                    stage_key="FINANCE", stage_name="Finance", order=3, allowed_roles=["FINANCE_ADMIN"],
                )),
            )
            assert_equal([r.user_id for r in finance_next.recipients], ["USR-FIN"])

            mixed_next = await resolver.resolve(
                [R.NEXT_STAGE_ROLE],
                make_event(next_stage_info=StageInfo(
                    stage_key="REVIEW", stage_name="Review", order=3,
                    allowed_roles=["FINANCE_ADMIN", "LOCATION_ADMIN"],
                )),
            )
            assert_equal(
                [r.user_id for r in mixed_next.recipients], ["USR-FIN", "USR-LOC1"],
                "Finance admins are not location scoped, location admins are",
            )

            previous = await resolver.resolve(
                [R.PREVIOUS_STAGE_ROLE],
                make_event(
                    event_type=WorkflowEventType.ENTITY_APPROVED,
                    current_stage=None, previous_stage="COMPANY_APPROVAL",
                ),
            )
            assert_equal([r.user_id for r in previous.recipients], ["USR-CA"])


async def test_admin_and_vendor_strategies():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_directory(session)
            await create_test_vendor(session, "VEN-1", contact_email="orders@acme.example.com")
            resolver = RecipientResolver(session)

            admins = await resolver.resolve([R.COMPANY_ADMIN], make_event())
            assert_equal([r.user_id for r in admins.recipients], ["USR-CA"], "Inactive and foreign admins excluded")

            location = await resolver.resolve([R.LOCATION_ADMIN], make_event(snapshot=EntitySnapshot()))
            assert_equal(
                [r.user_id for r in location.recipients], ["USR-LOC1", "USR-LOC2", "USR-SITE"],
                "No entity location: all location admins",
            )

            finance = await resolver.resolve([R.FINANCE_ADMIN], make_event())
            assert_equal([r.email for r in finance.recipients], ["finance@example.com"])

            vendor = await resolver.resolve([R.VENDOR], make_event())
            assert_equal([r.email for r in vendor.recipients], ["orders@acme.example.com"])
            assert_equal(vendor.recipients[0].role, "VENDOR")


async def test_dedupe_exclude_and_invalid():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_directory(session)
            resolver = RecipientResolver(session)

            event = make_event(
                triggered_by=TriggeredBy(
                    user_id="USR-CA", user_name="Company Admin", user_role="COMPANY_ADMIN",
                    user_email="company.admin@example.com",
                ),
            )
            result = await resolver.resolve(
                [R.REQUESTOR, R.ENTITY_OWNER, R.COMPANY_ADMIN, R.CUSTOM],
                event,
                custom_recipients=[
                    CustomRecipient(email="Auditor@Example.com", name="Auditor"),
                    CustomRecipient(email="not-an-email"),
                ],
                exclude_emails=["COMPANY.ADMIN@example.com"],
            )

            assert_equal(
                [r.email for r in result.recipients],
                ["asha.rao@example.com", "auditor@example.com"],
            )
            assert_equal(result.recipients[0].resolved_by, R.REQUESTOR, "First strategy wins a duplicate")
            assert_in("Duplicate email skipped: asha.rao@example.com", result.skipped)
            assert_in(
                "Excluded email skipped: Company.Admin@Example.com (action performer)", result.skipped
            )
            assert_in("Invalid email format: not-an-email", result.errors)
            assert_equal(result.recipients[1].name, "Auditor")


async def test_action_performer():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_directory(session)
            resolver = RecipientResolver(session)

            from_directory = await resolver.resolve(
                [R.ACTION_PERFORMER],
                make_event(triggered_by=TriggeredBy(user_id="USR-FIN", user_role="FINANCE_ADMIN")),
            )
            assert_equal([r.email for r in from_directory.recipients], ["finance@example.com"])

            unknown = await resolver.resolve(
                [R.ACTION_PERFORMER],
                make_event(triggered_by=TriggeredBy(user_id="USR-GHOST", user_role="EMPLOYEE")),
            )
            assert_equal(unknown.recipients, [])


async def test_email_validation():
    assert_true(is_valid_email("a.b@example.co.in"))
    for bad in (None, "", "plain", "a@b", "two words@example.com"):
        assert_true(not is_valid_email(bad), f"{bad!r} should be invalid")


async def main():
    return await run_tests("Recipient Resolver Tests", [
        ("Requestor from snapshot and directory", test_requestor_from_snapshot_and_directory),
        ("Stage roles respect location", test_stage_roles_respect_location),
        ("Admin and vendor strategies", test_admin_and_vendor_strategies),
        ("Dedupe, exclude and invalid", test_dedupe_exclude_and_invalid),
        ("Action performer", test_action_performer),
        ("Email validation", test_email_validation),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
