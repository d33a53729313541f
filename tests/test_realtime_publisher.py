"""Tests for run event publishing and websocket fan-out."""

import asyncio
import json
import threading

from automation_engine.core.realtime_publisher import RealtimePublisher
from automation_engine.models.core import RunEvent, RunEventType, RunStatus, StepRecord, StepStatus


class FakeWebSocket:
    def __init__(self, fail=False):
        self.accepted = False
        self.sent = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(json.loads(text))

    def events(self):
        return [m for m in self.sent if m["event"] in ("runCreated", "stepCompleted", "runCompleted")]


def run_event(run_id="run-1", workflow_id="wf-1"):
    return RunEvent(event=RunEventType.RUN_CREATED, run_id=run_id, workflow_id=workflow_id,
                    status=RunStatus.RUNNING.value, progress={"completed": 0, "total": 2})


class TestPublish:
    def test_listeners_receive_events(self, publisher, events):
        step = StepRecord(node_id="echo", node_type="action:echo", status=StepStatus.SUCCESS, result={"a": 1})

        publisher.run_created("run-1", "wf-1", total_nodes=2)
        publisher.step_completed("run-1", "wf-1", step, completed=1, total=2)
        publisher.run_completed("run-1", "wf-1", RunStatus.SUCCEEDED)

        assert [e.event.value for e in events.events] == ["runCreated", "stepCompleted", "runCompleted"]
        message = events.of_type("stepCompleted")[0].to_message()
        assert message["runId"] == "run-1"
        assert message["nodeId"] == "echo"
        assert message["progress"] == {"completed": 1, "total": 2}
        assert message["result"] == {"a": 1}
        assert "error" not in message

    def test_failing_listener_never_raises(self, publisher, events):
        def broken(event):
            raise ValueError("boom")

        publisher.add_listener(broken)
        publisher.publish(run_event())

        assert len(events.events) == 1
        assert publisher.pending == 1

    def test_full_queue_drops_events(self):
        publisher = RealtimePublisher(max_queue_size=1)
        publisher.publish(run_event("a"))
        publisher.publish(run_event("b"))

        assert publisher.pending == 1
        assert publisher.dropped_events == 1

    def test_remove_listener(self, publisher, events):
        publisher.remove_listener(events)
        publisher.publish(run_event())
        assert events.events == []


class TestFanOut:
    def test_broadcast_to_subscribers_only(self):
        async def scenario():
            publisher = RealtimePublisher()
            by_run, by_workflow, other = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()

            first = await publisher.connect(by_run)
            second = await publisher.connect(by_workflow)
            await publisher.connect(other)
            await publisher.subscribe(first, run_id="run-1")
            await publisher.subscribe(second, workflow_id="wf-1")

            delivered = await publisher.broadcast(run_event())
            return delivered, by_run, by_workflow, other

        delivered, by_run, by_workflow, other = asyncio.run(scenario())

        assert delivered == 2
        assert by_run.accepted
        assert by_run.sent[0]["event"] == "connectionEstablished"
        assert [m["runId"] for m in by_run.events()] == ["run-1"]
        assert len(by_workflow.events()) == 1
        assert other.events() == []

    def test_dead_connections_are_dropped(self):
        async def scenario():
            publisher = RealtimePublisher()
            healthy = FakeWebSocket()
            healthy_id = await publisher.connect(healthy)
            await publisher.subscribe(healthy_id, workflow_id="wf-1")

            broken = FakeWebSocket()
            broken_id = await publisher.connect(broken)
            await publisher.subscribe(broken_id, workflow_id="wf-1")
            broken.fail = True

            delivered = await publisher.broadcast(run_event())
            return publisher, delivered

        publisher, delivered = asyncio.run(scenario())
        assert delivered == 1
        assert publisher.get_connection_count() == 1

    def test_subscribe_requires_target(self):
        async def scenario():
            publisher = RealtimePublisher()
            connection_id = await publisher.connect(FakeWebSocket())
            return (await publisher.subscribe(connection_id),
                    await publisher.subscribe("unknown", run_id="run-1"))

        assert asyncio.run(scenario()) == (False, False)

    def test_drain_delivers_events_from_other_threads(self):
        async def scenario():
            publisher = RealtimePublisher()
            websocket = FakeWebSocket()
            connection_id = await publisher.connect(websocket)
            await publisher.subscribe(connection_id, run_id="run-1")
            publisher.start()

            producer = threading.Thread(target=lambda: publisher.run_completed("run-1", "wf-1", RunStatus.FAILED,
                                                                               {"reason": "cancelled"}))
            producer.start()
            producer.join()

            for _ in range(100):
                if websocket.events():
                    break
                await asyncio.sleep(0.02)
            publisher.stop()
            return websocket.events()

        events = asyncio.run(scenario())
        assert events == [{
            "event": "runCompleted", "runId": "run-1", "workflowId": "wf-1", "status": "FAILED",
            "error": {"reason": "cancelled"}, "timestamp": events[0]["timestamp"],
        }]
