from shipgate.event_bus import EventBus, ShipgateEvent


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[ShipgateEvent] = []

    def dummy_subscriber(event: ShipgateEvent):
        received_events.append(event)

    # Subscribe to the bus
    test_bus.subscribe(dummy_subscriber)

    # Emit an event
    test_bus.emit(
        event_type="gate_opened",
        task_id="ABC-123",
        payload={"stage_name": "intake"},
    )

    # Verify the event was received and formatted correctly
    assert len(received_events) == 1

    event = received_events[0]
    assert event.event_type == "gate_opened"
    assert event.task_id == "ABC-123"
    assert event.payload == {"stage_name": "intake"}

    # Verify auto-generated fields
    assert event.event_id is not None
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


def test_failing_subscriber_does_not_break_emit():
    test_bus = EventBus()
    received: list[str] = []

    def broken(event: ShipgateEvent):
        raise RuntimeError("sink down")

    test_bus.subscribe(broken)
    test_bus.subscribe(lambda event: received.append(event.event_type))

    event = test_bus.emit("audit", "ABC-123", {})
    assert event.event_type == "audit"
    assert received == ["audit"]
