"""Unit tests for the in-process change feed."""

import threading
import uuid

from app.core.events import ChangeBatch, ChangeEvent, ChangeFeed, ChangeType


def publish_message(feed: ChangeFeed, conversation_id: uuid.UUID, content: str) -> ChangeEvent:
    return feed.publish(
        table="chat_message",
        event_type=ChangeType.INSERT,
        record={"id": str(uuid.uuid4()), "content": content},
        conversation_id=conversation_id,
    )


class TestPublish:
    def test_cursors_increase(self) -> None:
        feed = ChangeFeed()
        conversation_id = uuid.uuid4()
        first = publish_message(feed, conversation_id, "a")
        second = publish_message(feed, conversation_id, "b")
        assert second.cursor == first.cursor + 1
        assert feed.cursor == second.cursor

    def test_events_since_filters_by_cursor(self) -> None:
        feed = ChangeFeed()
        conversation_id = uuid.uuid4()
        first = publish_message(feed, conversation_id, "a")
        publish_message(feed, conversation_id, "b")
        events = feed.events_since(first.cursor)
        assert [event.record["content"] for event in events] == ["b"]

    def test_events_since_filters_by_conversation_and_table(self) -> None:
        feed = ChangeFeed()
        mine, other = uuid.uuid4(), uuid.uuid4()
        publish_message(feed, mine, "mine")
        publish_message(feed, other, "other")
        feed.publish(
            table="chat_conversation",
            event_type=ChangeType.UPDATE,
            record={"id": str(mine)},
            conversation_id=mine,
        )
        assert len(feed.events_since(0, conversation_id=mine)) == 2
        messages = feed.events_since(0, table="chat_message", conversation_id=mine)
        assert [event.record["content"] for event in messages] == ["mine"]

    def test_history_is_bounded(self) -> None:
        feed = ChangeFeed(max_events=3)
        conversation_id = uuid.uuid4()
        for n in range(5):
            publish_message(feed, conversation_id, str(n))
        assert [e.record["content"] for e in feed.events_since(0)] == ["2", "3", "4"]


class TestPoll:
    def test_returns_events_and_last_cursor(self) -> None:
        feed = ChangeFeed()
        conversation_id = uuid.uuid4()
        first = publish_message(feed, conversation_id, "a")
        publish_message(feed, conversation_id, "b")
        batch = feed.poll(first.cursor)
        assert [e.record["content"] for e in batch.events] == ["b"]
        assert batch.cursor == feed.cursor
        assert batch.reset is False

    def test_nothing_new_keeps_cursor(self) -> None:
        feed = ChangeFeed()
        conversation_id, other = uuid.uuid4(), uuid.uuid4()
        publish_message(feed, conversation_id, "a")
        publish_message(feed, other, "elsewhere")
        batch = feed.poll(1, conversation_id=conversation_id)
        assert batch.events == []
        assert batch.cursor == 1
        assert batch.reset is False

    def test_evicted_history_signals_reset(self) -> None:
        feed = ChangeFeed(max_events=3)
        conversation_id = uuid.uuid4()
        for n in range(5):
            publish_message(feed, conversation_id, str(n))

        batch = feed.poll(0, conversation_id=conversation_id)
        assert batch.reset is True
        assert batch.events == []
        assert batch.cursor == 5

        # The oldest retained event directly follows cursor 2, so nothing is lost.
        batch = feed.poll(2)
        assert batch.reset is False
        assert [e.cursor for e in batch.events] == [3, 4, 5]

        assert feed.poll(1).reset is True

    def test_cursor_from_before_restart_signals_reset(self) -> None:
        feed = ChangeFeed()
        publish_message(feed, uuid.uuid4(), "a")
        batch = feed.poll(40)
        assert batch.reset is True
        assert batch.cursor == 1

    def test_empty_feed(self) -> None:
        batch = ChangeFeed().poll(0)
        assert batch == ChangeBatch(events=[], cursor=0)

    def test_ordered_writes_serializes_writers(self) -> None:
        feed = ChangeFeed()
        inside = 0
        overlaps: list[int] = []

        def worker() -> None:
            nonlocal inside
            for _ in range(100):
                with feed.ordered_writes():
                    inside += 1
                    overlaps.append(inside)
                    inside -= 1

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert set(overlaps) == {1}


class TestSubscriptions:
    def test_callback_receives_matching_events(self) -> None:
        feed = ChangeFeed()
        mine, other = uuid.uuid4(), uuid.uuid4()
        received: list[ChangeEvent] = []
        feed.subscribe(received.append, table="chat_message", conversation_id=mine)
        publish_message(feed, mine, "hello")
        publish_message(feed, other, "ignored")
        assert [event.record["content"] for event in received] == ["hello"]

    def test_unsubscribe_stops_delivery(self) -> None:
        feed = ChangeFeed()
        received: list[ChangeEvent] = []
        subscription = feed.subscribe(received.append)
        publish_message(feed, uuid.uuid4(), "one")
        feed.unsubscribe(subscription)
        publish_message(feed, uuid.uuid4(), "two")
        assert len(received) == 1

    def test_failing_callback_does_not_block_others(self) -> None:
        feed = ChangeFeed()
        received: list[ChangeEvent] = []

        def broken(event: ChangeEvent) -> None:
            raise RuntimeError("subscriber bug")

        feed.subscribe(broken)
        feed.subscribe(received.append)
        publish_message(feed, uuid.uuid4(), "still delivered")
        assert len(received) == 1

    def test_concurrent_publishers_deliver_in_cursor_order(self) -> None:
        feed = ChangeFeed()
        conversation_id = uuid.uuid4()
        received: list[int] = []
        feed.subscribe(lambda event: received.append(event.cursor))

        def worker() -> None:
            for n in range(50):
                publish_message(feed, conversation_id, str(n))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert received == list(range(1, 201))
        assert len(feed.events_since(0)) == 200
