#!/usr/bin/env python3
"""
Test: HTTP API
Purpose: Verify routing, authentication headers, error envelopes and status codes

The application lifespan is not run; each test wires its own database and
event bus into app.state.
"""

import asyncio
import sys
from contextlib import asynccontextmanager

import httpx

from fixtures import (
    TestContext, COMPANY_ID, OTHER_COMPANY_ID,
    order_workflow_config, seed_config, create_test_order, MockEmailSender,
    assert_equal, assert_true, assert_false, assert_in, assert_not_in, assert_is_none, run_tests,
)

from main import app
from approval_workflow.models.orm import NotificationTemplate
from approval_workflow.models.schemas import WorkflowErrorCode, WorkflowEventType
from approval_workflow.notifications import CompanyConfigCache


def headers(role, user_id=None, company_id=COMPANY_ID):
    return {
        "X-Company-Id": company_id,
        "X-User-Id": user_id or f"USR-{role}",
        "X-User-Role": role,
        "X-User-Name": "Priya Shah",
        "X-User-Email": "priya.shah@example.com",
    }


@asynccontextmanager
async def api_client(ctx, sender=None):
    app.state.db = ctx.db
    app.state.event_bus = ctx.event_bus
    app.state.email_adapter = sender or MockEmailSender()
    app.state.config_cache = CompanyConfigCache()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


async def seed_order(ctx, **fields):
    async with ctx.get_session() as session:
        await seed_config(session, order_workflow_config())
        await create_test_order(session, **fields)


async def test_health_and_metrics():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            health = await client.get("/health")
            assert_equal(health.status_code, 200)
            assert_equal(health.json()["status"], "healthy")

            metrics = await client.get("/metrics")
            assert_equal(metrics.status_code, 200)
            body = metrics.json()
            assert_equal(body["notifications"]["total"], 0)
            assert_equal(body["queue"]["total"], 0)
            assert_true(body["event_bus"]["running"])


async def test_missing_identity_headers():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            response = await client.post(
                "/api/workflow/approve", json={"entity_type": "ORDER", "entity_id": "ORD-100001"}
            )
            assert_equal(response.status_code, 401)
            assert_equal(response.json(), {
                "success": False,
                "data": None,
                "error_code": "UNAUTHORIZED",
                "error_message": "Authentication required. Please log in.",
            })


async def test_approve_endpoint():
    async with TestContext() as ctx:
        await seed_order(ctx)
        async with api_client(ctx) as client:
            response = await client.post(
                "/api/workflow/approve",
                json={"entity_type": "ORDER", "entity_id": "ORD-100001", "remarks": "Looks fine"},
                headers={**headers("LOCATION_ADMIN"), "X-Forwarded-For": "10.0.0.7, 10.0.0.1"},
            )
            assert_equal(response.status_code, 200)
            body = response.json()
            assert_true(body["success"])
            assert_equal(body["data"]["new_status"], "PENDING_COMPANY_APPROVAL")
            assert_equal(body["data"]["new_stage"], "COMPANY_APPROVAL")

            # The stage has moved on, so the same role is no longer allowed
            again = await client.post(
                "/api/workflow/approve",
                json={"entity_type": "ORDER", "entity_id": "ORD-100001"},
                headers=headers("LOCATION_ADMIN"),
            )
            assert_equal(again.status_code, 403)
            assert_equal(again.json()["error_code"], WorkflowErrorCode.ROLE_NOT_ALLOWED.value)

            mismatch = await client.post(
                "/api/workflow/approve",
                json={"entity_type": "ORDER", "entity_id": "ORD-100001", "expected_stage": "LOCATION_APPROVAL"},
                headers=headers("COMPANY_ADMIN"),
            )
            assert_equal(mismatch.status_code, 422)
            assert_equal(mismatch.json()["error_code"], WorkflowErrorCode.STAGE_MISMATCH.value)

        await ctx.drain_events()
        event = ctx.collector.find_event(event_type=WorkflowEventType.ENTITY_APPROVED_AT_STAGE)
        assert_equal(event.triggered_by.user_email, "priya.shah@example.com")


async def test_not_found_is_404():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            response = await client.post(
                "/api/workflow/approve",
                json={"entity_type": "ORDER", "entity_id": "ORD-404404"},
                headers=headers("COMPANY_ADMIN"),
            )
            assert_equal(response.status_code, 404)
            assert_equal(response.json()["error_code"], WorkflowErrorCode.ENTITY_NOT_FOUND.value)


async def test_request_validation_is_400():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            no_reason = await client.post(
                "/api/workflow/reject",
                json={"entity_type": "ORDER", "entity_id": "ORD-100001"},
                headers=headers("LOCATION_ADMIN"),
            )
            assert_equal(no_reason.status_code, 400)
            assert_equal(no_reason.json()["error_code"], WorkflowErrorCode.VALIDATION_ERROR.value)
            assert_in("reason_code", no_reason.json()["error_message"])

            bad_id = await client.post(
                "/api/workflow/approve",
                json={"entity_type": "ORDER", "entity_id": "ORD 1; DROP TABLE"},
                headers=headers("LOCATION_ADMIN"),
            )
            assert_equal(bad_id.status_code, 400)

            bad_type = await client.post(
                "/api/workflow/approve",
                json={"entity_type": "SPACESHIP", "entity_id": "ORD-100001"},
                headers=headers("LOCATION_ADMIN"),
            )
            assert_equal(bad_type.status_code, 400)


async def test_reject_and_history():
    async with TestContext() as ctx:
        await seed_order(ctx)
        async with api_client(ctx) as client:
            response = await client.post(
                "/api/workflow/reject",
                json={
                    "entity_type": "ORDER",
                    "entity_id": "ORD-100001",
                    "reason_code": "BUDGET_EXCEEDED",
                    "remarks": "Over quarterly limit",
                },
                headers=headers("LOCATION_ADMIN"),
            )
            assert_equal(response.status_code, 200)
            data = response.json()["data"]
            assert_equal(data["new_status"], "REJECTED")
            assert_true(data["is_terminal"])
            assert_not_in("rejection_policy", data)

            history = await client.get(
                "/api/workflow/rejections/ORDER/ORD-100001", headers=headers("COMPANY_ADMIN")
            )
            records = history.json()["data"]
            assert_equal(len(records), 1)
            assert_equal(records[0]["reason_code"], "BUDGET_EXCEEDED")

            # Another company sees nothing
            foreign = await client.get(
                "/api/workflow/rejections/ORDER/ORD-100001",
                headers=headers("COMPANY_ADMIN", company_id=OTHER_COMPANY_ID),
            )
            assert_equal(foreign.json()["data"], [])


async def test_actions_and_ui_rules():
    async with TestContext() as ctx:
        await seed_order(ctx)
        async with api_client(ctx) as client:
            actions = await client.get(
                "/api/workflow/actions",
                params={"entity_type": "ORDER", "entity_id": "ORD-100001"},
                headers=headers("SITE_ADMIN"),
            )
            assert_equal(actions.status_code, 200)
            data = actions.json()["data"]
            assert_true(data["can_approve"]["allowed"])
            assert_true(data["can_reject"]["allowed"])
            assert_equal(data["current_stage"]["stage_key"], "LOCATION_APPROVAL")
            assert_equal(data["next_stage"]["stage_key"], "COMPANY_APPROVAL")
            assert_false(data["is_terminal"])

            rules = await client.get(
                "/api/workflow/ui-rules",
                params={"entity_type": "ORDER", "entity_id": "ORD-100001"},
                headers=headers("EMPLOYEE", user_id="EMP-1"),
            )
            assert_equal(rules.status_code, 200)
            body = rules.json()
            assert_equal(body["workflow_state"], "IN_WORKFLOW")
            assert_false(body["allowed_actions"]["can_approve"]["allowed"])
            assert_true(body["user_role_info"]["is_owner"])


async def test_initialize_endpoint():
    async with TestContext() as ctx:
        await seed_order(ctx, workflow_status=None, current_stage=None, status="Draft")
        async with api_client(ctx) as client:
            response = await client.post(
                "/api/workflow/initialize",
                json={"entity_type": "ORDER", "entity_id": "ORD-100001"},
                headers=headers("EMPLOYEE", user_id="EMP-1"),
            )
            assert_equal(response.status_code, 200)
            assert_equal(response.json()["data"]["current_stage"], "LOCATION_APPROVAL")
            assert_equal(response.json()["data"]["status"], "PENDING_LOCATION_APPROVAL")

        await ctx.drain_events()
        assert_equal(ctx.collector.event_types(), [WorkflowEventType.ENTITY_SUBMITTED])


async def test_company_notification_config():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            path = f"/api/notifications/company-config/{COMPANY_ID}"

            empty = await client.get(path, headers=headers("COMPANY_ADMIN"))
            assert_equal(empty.status_code, 200)
            assert_is_none(empty.json()["data"])

            saved = await client.put(
                path,
                json={"brand_name": "Acme Corp", "quiet_hours_enabled": True,
                      "quiet_hours_start": "22:00", "quiet_hours_end": "08:00"},
                headers=headers("COMPANY_ADMIN"),
            )
            assert_equal(saved.status_code, 200)
            assert_equal(saved.json()["data"]["brand_name"], "Acme Corp")

            patched = await client.put(path, json={"brand_color": "#112233"}, headers=headers("COMPANY_ADMIN"))
            data = patched.json()["data"]
            assert_equal(data["brand_color"], "#112233")
            assert_equal(data["brand_name"], "Acme Corp", "Partial update keeps other fields")
            assert_true(data["quiet_hours_enabled"])

            bad_time = await client.put(path, json={"quiet_hours_start": "10pm"}, headers=headers("COMPANY_ADMIN"))
            assert_equal(bad_time.status_code, 400)

            other_admin = await client.put(
                path, json={"brand_name": "Hijack"},
                headers=headers("COMPANY_ADMIN", company_id=OTHER_COMPANY_ID),
            )
            assert_equal(other_admin.status_code, 403)

            super_admin = await client.get(
                path, headers=headers("SUPER_ADMIN", company_id=OTHER_COMPANY_ID)
            )
            assert_equal(super_admin.json()["data"]["brand_name"], "Acme Corp")

            employee = await client.get("/api/notifications/logs", headers=headers("EMPLOYEE"))
            assert_equal(employee.status_code, 403)
            assert_equal(employee.json()["error_code"], "FORBIDDEN")


async def test_direct_send_endpoint():
    async with TestContext() as ctx:
        sender = MockEmailSender()
        async with api_client(ctx, sender) as client:
            missing = await client.post(
                "/api/notifications/send",
                json={"event_code": "WELCOME", "recipient_email": "new.user@example.com"},
                headers=headers("COMPANY_ADMIN"),
            )
            assert_equal(missing.status_code, 422)
            assert_equal(missing.json()["error_code"], "NOTIFICATION_FAILED")

            async with ctx.get_session() as session:
                session.add(NotificationTemplate(
                    template_key="welcome",
                    channel="EMAIL",
                    event_type="WELCOME",
                    subject_template="Welcome to {{brand_name}}, {{recipient_name}}",
                    body_template="<p>Hello</p>",
                ))
                await session.commit()

            sent = await client.post(
                "/api/notifications/send",
                json={"event_code": "WELCOME", "recipient_email": "new.user@example.com",
                      "recipient_name": "Neha"},
                headers=headers("COMPANY_ADMIN"),
            )
            assert_equal(sent.status_code, 200)
            assert_equal(sent.json()["data"]["outcome"], "SENT")
            assert_equal(sender.sent[0]["subject"], "Welcome to UDS, Neha")

            logs = await client.get("/api/notifications/logs", headers=headers("COMPANY_ADMIN"))
            assert_equal(logs.json()["data"]["count"], 1)
            assert_equal(logs.json()["data"]["logs"][0]["recipient_email"], "new.user@example.com")

            foreign = await client.post(
                "/api/notifications/send",
                json={"event_code": "WELCOME", "recipient_email": "x@example.com",
                      "company_id": OTHER_COMPANY_ID},
                headers=headers("COMPANY_ADMIN"),
            )
            assert_equal(foreign.status_code, 403)


async def main():
    return await run_tests("HTTP API Tests", [
        ("Health and metrics", test_health_and_metrics),
        ("Missing identity headers", test_missing_identity_headers),
        ("Approve endpoint", test_approve_endpoint),
        ("Not found is 404", test_not_found_is_404),
        ("Request validation is 400", test_request_validation_is_400),
        ("Reject and history", test_reject_and_history),
        ("Actions and UI rules", test_actions_and_ui_rules),
        ("Initialize endpoint", test_initialize_endpoint),
        ("Company notification config", test_company_notification_config),
        ("Direct send endpoint", test_direct_send_endpoint),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
