#!/usr/bin/env python3
"""
Test: Event Bus
Purpose: Test workflow event publishing and subscription

Tests:
- Typed and wildcard subscribers
- Handler failures don't block others
- Unsubscribe
- Queue overflow drops instead of blocking
- Event bus lifecycle and statistics
"""

import asyncio
import sys

from fixtures import (
    print_test_header, print_pass, print_fail, print_summary,
    EventCollector, make_event, assert_equal, assert_true, assert_false, assert_in,
)

from approval_workflow.core.event_bus import EventBus
from approval_workflow.models.schemas import WorkflowEventType


async def test_typed_and_wildcard_subscribers():
    """Typed subscribers see their type; wildcard subscribers see everything"""
    bus = EventBus()
    approved = EventCollector()
    everything = EventCollector()

    bus.subscribe(WorkflowEventType.ENTITY_APPROVED, approved.handler)
    bus.subscribe("*", everything.handler)

    await bus.start()

    try:
        assert_true(bus.emit(make_event(WorkflowEventType.ENTITY_SUBMITTED, event_id="WFE-1")))
        assert_true(bus.emit(make_event(WorkflowEventType.ENTITY_APPROVED, event_id="WFE-2")))
        await bus.wait_until_idle()

        assert_equal([e.event_id for e in approved.get_events()], ["WFE-2"])
        assert_equal([e.event_id for e in everything.get_events()], ["WFE-1", "WFE-2"])

    finally:
        await bus.stop()


async def test_handler_failure_doesnt_block_others():
    bus = EventBus()
    collector = EventCollector()

    async def failing_handler(event):
        raise RuntimeError("notification backend down")

    bus.subscribe(WorkflowEventType.ENTITY_REJECTED, failing_handler)
    bus.subscribe(WorkflowEventType.ENTITY_REJECTED, collector.handler)

    await bus.start()

    try:
        bus.emit(make_event(WorkflowEventType.ENTITY_REJECTED))
        await bus.wait_until_idle()

        assert_equal(collector.count(), 1, "Second handler should still run")
        assert_equal(bus.get_stats()["handler_errors"], 1)

        # The bus keeps processing after a handler error
        bus.emit(make_event(WorkflowEventType.ENTITY_REJECTED, event_id="WFE-AFTER"))
        await bus.wait_until_idle()
        assert_equal(collector.count(), 2)

    finally:
        await bus.stop()


async def test_unsubscribe():
    bus = EventBus()
    collector = EventCollector()

    unsubscribe = bus.subscribe(WorkflowEventType.ENTITY_SUBMITTED, collector.handler)
    await bus.start()

    try:
        bus.emit(make_event(WorkflowEventType.ENTITY_SUBMITTED))
        await bus.wait_until_idle()

        unsubscribe()
        unsubscribe()  # second call is a no-op

        bus.emit(make_event(WorkflowEventType.ENTITY_SUBMITTED))
        await bus.wait_until_idle()

        assert_equal(collector.count(), 1, "No delivery after unsubscribe")

    finally:
        await bus.stop()


async def test_queue_overflow_drops_events():
    """A full queue rejects the event instead of blocking the caller"""
    bus = EventBus(max_queue_size=2)

    # Not started, so nothing drains the queue
    assert_true(bus.emit(make_event(event_id="WFE-1")))
    assert_true(bus.emit(make_event(event_id="WFE-2")))
    assert_false(bus.emit(make_event(event_id="WFE-3")), "Third event should be dropped")

    stats = bus.get_stats()
    assert_equal(stats["events_emitted"], 2)
    assert_equal(stats["events_dropped"], 1)
    assert_equal(stats["queue_size"], 2)


async def test_event_bus_lifecycle():
    bus = EventBus()

    assert_false(bus.get_stats()["running"])

    await bus.start()
    assert_true(bus.get_stats()["running"])

    # Starting twice is harmless
    await bus.start()

    await bus.stop()
    assert_false(bus.get_stats()["running"])

    # Stopping twice is harmless
    await bus.stop()


async def test_event_bus_stats():
    bus = EventBus()
    collector = EventCollector()
    bus.subscribe(WorkflowEventType.ENTITY_APPROVED, collector.handler)
    bus.subscribe("*", collector.handler)

    stats = bus.get_stats()
    assert_equal(stats["max_queue_size"], 1000, "Default max queue size comes from settings")
    assert_equal(stats["total_handlers"], 2)
    assert_in("ENTITY_APPROVED", stats["event_types"])
    assert_in("*", stats["event_types"])


async def main():
    """Run all event bus tests"""
    print_test_header("Event Bus Tests")

    tests_passed = 0
    tests_failed = 0

    tests = [
        ("Typed and wildcard subscribers", test_typed_and_wildcard_subscribers),
        ("Handler failure doesn't block others", test_handler_failure_doesnt_block_others),
        ("Unsubscribe", test_unsubscribe),
        ("Queue overflow drops events", test_queue_overflow_drops_events),
        ("Event bus lifecycle", test_event_bus_lifecycle),
        ("Event bus statistics", test_event_bus_stats),
    ]

    for test_name, test_func in tests:
        try:
            await test_func()
            print_pass(test_name)
            tests_passed += 1
        except Exception as e:
            print_fail(test_name, str(e))
            import traceback
            traceback.print_exc()
            tests_failed += 1

    print_summary(tests_passed, tests_failed)
    return 0 if tests_failed == 0 else 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
