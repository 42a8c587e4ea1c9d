from bookpay.notifications import EventChannel, OrderEvent, OrderTransition, order_events


def transition(event=OrderEvent.PAYMENT_SUCCESS, order_number="ORD-1", status="paid"):
    return OrderTransition(event=event, order_number=order_number, status=status)


def test_subscribers_filter_by_event_and_order():
    channel = EventChannel("test")
    everything, paid, one_order = [], [], []

    channel.subscribe(everything.append)
    channel.subscribe(paid.append, events=[OrderEvent.PAYMENT_SUCCESS])
    channel.subscribe(one_order.append, order_number="ORD-2")

    channel.publish(transition(order_number="ORD-1"))
    channel.publish(transition(event=OrderEvent.ORDER_EXPIRED, order_number="ORD-2", status="expired"))

    assert len(everything) == 2
    assert [t.order_number for t in paid] == ["ORD-1"]
    assert [t.order_number for t in one_order] == ["ORD-2"]


def test_unsubscribe_stops_delivery():
    channel = EventChannel("test")
    seen = []
    subscription = channel.subscribe(seen.append)

    subscription.unsubscribe()
    subscription.unsubscribe()
    channel.publish(transition())

    assert seen == []
    assert len(channel) == 0


def test_failing_subscriber_does_not_break_the_others(caplog):
    channel = EventChannel("test")
    seen = []

    def broken(_):
        raise RuntimeError("boom")

    channel.subscribe(broken)
    channel.subscribe(seen.append)

    delivered = channel.publish(transition())

    assert delivered == 1
    assert len(seen) == 1
    assert "Subscriber on test channel failed" in caplog.text


def test_services_publish_committed_transitions(place_order, settle):
    seen = []
    order_events.subscribe(seen.append)

    order = place_order()
    settle(order)

    assert [t.event for t in seen] == [OrderEvent.ORDER_CREATED, OrderEvent.PAYMENT_SUCCESS]
    assert seen[1].previous_status == "pending"
    assert seen[1].status == "paid"
    assert seen[1].meta == {"transaction_ref": "txn-1"}
