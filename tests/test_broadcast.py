import asyncio

from devlab_indexer.broadcast import (
    GLOBAL_TOPIC, NEW_BLOCK, NEW_EVENT, Broadcaster, contract_topic,
)

from conftest import TOKEN


def test_contract_topic_is_case_insensitive():
    assert contract_topic(TOKEN.lower()) == contract_topic(TOKEN) == f"contract:{TOKEN}"


def test_publish_without_subscribers_is_a_noop(broadcaster):
    assert broadcaster.publish(GLOBAL_TOPIC, NEW_BLOCK, {"blockNumber": 1}) == 0


async def test_messages_arrive_in_publish_order(broadcaster):
    sub = broadcaster.subscribe(GLOBAL_TOPIC)
    for n in range(3):
        broadcaster.publish(GLOBAL_TOPIC, NEW_BLOCK, {"blockNumber": n})

    got = [await sub.get() for _ in range(3)]
    assert [m["data"]["blockNumber"] for m in got] == [0, 1, 2]
    assert all(m["type"] == NEW_BLOCK for m in got)


async def test_topics_are_isolated(broadcaster):
    token_sub = broadcaster.subscribe(contract_topic(TOKEN))
    global_sub = broadcaster.subscribe(GLOBAL_TOPIC)

    assert broadcaster.publish(contract_topic(TOKEN), NEW_EVENT, {"id": 1}) == 1
    assert global_sub.queue.empty()
    assert (await token_sub.get())["data"] == {"id": 1}


def test_closing_the_handle_unsubscribes(broadcaster):
    with broadcaster.subscribe(GLOBAL_TOPIC) as sub:
        assert broadcaster.subscriber_count(GLOBAL_TOPIC) == 1
    assert sub.closed
    assert broadcaster.subscriber_count() == 0
    assert broadcaster.publish(GLOBAL_TOPIC, NEW_BLOCK, {}) == 0


def test_slow_subscriber_drops_oldest():
    b = Broadcaster(queue_size=2)
    sub = b.subscribe(GLOBAL_TOPIC)
    for n in range(5):
        b.publish(GLOBAL_TOPIC, NEW_BLOCK, n)

    assert sub.dropped == 3
    assert [sub.queue.get_nowait()["data"] for _ in range(2)] == [3, 4]


async def test_shared_queue_across_topics(broadcaster):
    inbox = asyncio.Queue()
    a = broadcaster.subscribe(GLOBAL_TOPIC, inbox)
    b = broadcaster.subscribe(contract_topic(TOKEN), inbox)

    broadcaster.publish(GLOBAL_TOPIC, NEW_BLOCK, 1)
    broadcaster.publish(contract_topic(TOKEN), NEW_EVENT, 2)
    b.close()
    broadcaster.publish(contract_topic(TOKEN), NEW_EVENT, 3)

    assert [inbox.get_nowait()["data"] for _ in range(inbox.qsize())] == [1, 2]
    a.close()
