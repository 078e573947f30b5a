import asyncio

import pytest

from services.taskwing.app.agents.bus import END_OF_STREAM, StreamBus
from services.taskwing.app.agents.events import EventKind, StreamEvent
from services.taskwing.app.agents.runtime import AgentRuntime
from services.taskwing.app.agents.specs import EXPLAIN_AGENT, ExplainInput
from services.taskwing.app.errors import Conflict


def event(seq: int, kind: EventKind = EventKind.TOKEN) -> StreamEvent:
    return StreamEvent(run_id="run-1", agent="planning", seq=seq, kind=kind)


@pytest.mark.asyncio
async def test_events_arrive_in_publish_order_then_end_of_stream():
    bus = StreamBus()
    async with bus.producer("planning") as producer:
        for seq in range(1, 4):
            await producer.publish(event(seq))
    bus.close()

    received = [item.seq async for item in bus]
    assert received == [1, 2, 3]
    assert await bus.receive() is END_OF_STREAM


@pytest.mark.asyncio
async def test_close_wakes_every_pending_receiver():
    bus = StreamBus()
    waiters = [asyncio.create_task(bus.receive()) for _ in range(3)]
    await asyncio.sleep(0)
    bus.close()
    assert await asyncio.gather(*waiters) == [END_OF_STREAM] * 3


@pytest.mark.asyncio
async def test_close_is_explicit_and_once():
    bus = StreamBus()
    producer = bus.producer("code")
    bus.close()

    with pytest.raises(Conflict):
        bus.close()
    with pytest.raises(Conflict):
        await producer.publish(event(1))
    with pytest.raises(Conflict):
        bus.producer("late")


@pytest.mark.asyncio
async def test_deregistered_producer_cannot_publish():
    bus = StreamBus()
    producer = bus.producer("doc")
    producer.deregister()
    with pytest.raises(Conflict):
        await producer(event(1))


@pytest.mark.asyncio
async def test_wait_idle_resolves_when_all_producers_leave():
    bus = StreamBus()
    first = bus.producer("doc")
    second = bus.producer("code")
    idle = asyncio.create_task(bus.wait_idle())

    first.deregister()
    await asyncio.sleep(0)
    assert not idle.done()
    assert bus.producer_count == 1

    second.deregister()
    await asyncio.wait_for(idle, timeout=1)
    assert bus.producer_count == 0


@pytest.mark.asyncio
async def test_producer_collects_agent_run_events(gateway, chat, settings):
    chat.queue({"explanation": "Plans are stored in SQLite.", "key_points": ["sqlite"]})
    runtime = AgentRuntime(gateway, settings.llm)
    bus = StreamBus()
    async with bus.producer("explain") as producer:
        run = await runtime.run(EXPLAIN_AGENT, ExplainInput(goal="storage"), handler=producer)
    bus.close()

    events = [item async for item in bus]
    assert run.ok
    assert events[0].kind is EventKind.RUN_START
    assert events[-1].kind is EventKind.AGENT_COMPLETE
    assert [e.seq for e in events] == list(range(1, len(events) + 1))
