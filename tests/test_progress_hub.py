from __future__ import annotations

import asyncio

from uatcms.runtime.progress import CLOSED, ProgressHub


def test_subscribers_receive_messages_until_channel_closes() -> None:
    async def scenario() -> list[tuple[str, dict]]:
        hub = ProgressHub()
        got: list[tuple[str, dict]] = []

        async def listen() -> None:
            async for msg in hub.subscribe("run_1"):
                got.append((msg.event, msg.data))

        task = asyncio.create_task(listen())
        await asyncio.sleep(0)
        assert hub.subscriber_count("run_1") == 1

        hub.publish("run_1", "progress", {"current_step": 1})
        hub.publish("run_2", "progress", {"current_step": 9})
        hub.publish("run_1", "run_complete", {"status": "passed"})
        hub.close("run_1")
        await asyncio.wait_for(task, timeout=1)
        assert hub.subscriber_count("run_1") == 0
        return got

    assert asyncio.run(scenario()) == [("progress", {"current_step": 1}), ("run_complete", {"status": "passed"})]


def test_latest_keeps_only_last_progress_and_clears_on_close() -> None:
    hub = ProgressHub()
    assert hub.latest("run_1") is None
    hub.publish("run_1", "progress", {"current_step": 1})
    hub.publish("run_1", "progress", {"current_step": 2})
    hub.publish("run_1", "run_complete", {"status": "passed"})
    latest = hub.latest("run_1")
    assert latest is not None and latest.data == {"current_step": 2}
    hub.close("run_1")
    assert hub.latest("run_1") is None


def test_slow_subscriber_drops_oldest_messages() -> None:
    async def scenario() -> list:
        hub = ProgressHub(subscriber_buffer=2)
        q = hub.attach("run_1")
        for i in range(4):
            hub.publish("run_1", "progress", {"i": i})
        items = [q.get_nowait(), q.get_nowait()]
        hub.close("run_1")
        items.append(q.get_nowait())
        hub.detach("run_1", q)
        return items

    first, second, last = asyncio.run(scenario())
    assert [first.data["i"], second.data["i"]] == [2, 3]
    assert last is CLOSED
