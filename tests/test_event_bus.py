from steward.event_bus import EventBus, HarnessEvent


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[HarnessEvent] = []

    def dummy_subscriber(event: HarnessEvent):
        received_events.append(event)

    # Subscribe to the bus
    test_bus.subscribe(dummy_subscriber)

    # Emit an event
    test_bus.emit(
        event_type="transition",
        run_id="run-1",
        payload={"source": "applying", "target": "gates_checked"},
    )

    # Verify the event was received and formatted correctly
    assert len(received_events) == 1

    event = received_events[0]
    assert event.event_type == "transition"
    assert event.run_id == "run-1"
    assert event.payload == {"source": "applying", "target": "gates_checked"}

    # Verify auto-generated fields
    assert event.event_id is not None
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


def test_broken_subscriber_does_not_stop_others():
    test_bus = EventBus()
    received: list[str] = []

    def broken(event: HarnessEvent):
        raise RuntimeError("observer bug")

    test_bus.subscribe(broken)
    test_bus.subscribe(lambda event: received.append(event.event_type))

    event = test_bus.emit("run_finished", "run-1", {"outcome": "passed"})

    assert received == ["run_finished"]
    assert event.payload["outcome"] == "passed"
