"""
Subscription registry and dispatch tests.

Tests scenarios the connection manager depends on:
- Registration order and replacement semantics
- Fan-out to every matching handler
- Handler failure isolation
- Mutation from inside a handler
- Concurrent registration
"""
import logging
import threading

import pytest

from managed_mqtt_client.core.exceptions import InvalidArgumentError
from managed_mqtt_client.core.models import Message, QoS
from managed_mqtt_client.core.subscription_registry import SubscriptionRegistry

REGISTRY_LOGGER = "managed_mqtt_client.core.subscription_registry"


def message(topic: str, payload: str = "true") -> Message:
    return Message(topic=topic, payload=payload)


# ============================================================================
# REGISTRATION
# ============================================================================


class TestRegistration:

    def test_add_new_pattern_returns_none(self):
        registry = SubscriptionRegistry()
        assert registry.add("inputs/#", lambda m: None) is None
        assert "inputs/#" in registry
        assert len(registry) == 1

    def test_add_defaults(self):
        registry = SubscriptionRegistry()
        registry.add("inputs/#", lambda m: None)
        subscription = registry.get("inputs/#")
        assert subscription.qos is QoS.AT_LEAST_ONCE
        assert subscription.label == "inputs/#"

    def test_replacing_returns_old_subscription_and_keeps_one_entry(self):
        registry = SubscriptionRegistry()
        first = lambda m: "first"  # noqa: E731
        second = lambda m: "second"  # noqa: E731
        registry.add("inputs/#", first, label="first")

        replaced = registry.add("inputs/#", second, qos=QoS.EXACTLY_ONCE, label="second")

        assert replaced.handler is first
        assert len(registry) == 1
        current = registry.get("inputs/#")
        assert current.handler is second
        assert current.qos is QoS.EXACTLY_ONCE

    def test_replacement_moves_pattern_to_end(self):
        registry = SubscriptionRegistry()
        registry.add("a/#", lambda m: None)
        registry.add("b/#", lambda m: None)
        registry.add("a/#", lambda m: None)
        assert registry.patterns() == ["b/#", "a/#"]

    @pytest.mark.parametrize("pattern", ["", "a/#/b", "a+"])
    def test_invalid_pattern_rejected(self, pattern):
        registry = SubscriptionRegistry()
        with pytest.raises(InvalidArgumentError):
            registry.add(pattern, lambda m: None)
        assert len(registry) == 0

    @pytest.mark.parametrize("handler", [None, "not callable", 42])
    def test_missing_or_non_callable_handler_rejected(self, handler):
        registry = SubscriptionRegistry()
        with pytest.raises(InvalidArgumentError):
            registry.add("inputs/#", handler)

    def test_remove(self, caplog):
        registry = SubscriptionRegistry()
        registry.add("inputs/#", lambda m: None)

        assert registry.remove("inputs/#").pattern == "inputs/#"
        assert "inputs/#" not in registry

        with caplog.at_level(logging.WARNING, logger=REGISTRY_LOGGER):
            assert registry.remove("inputs/#") is None
        assert "No handler registered" in caplog.text

    def test_snapshot_is_a_copy(self):
        registry = SubscriptionRegistry()
        registry.add("inputs/#", lambda m: None)
        snapshot = registry.snapshot()
        registry.add("outputs/#", lambda m: None)
        assert [s.pattern for s in snapshot] == ["inputs/#"]


# ============================================================================
# DISPATCH
# ============================================================================


class TestDispatch:

    def test_fan_out_in_registration_order(self):
        registry = SubscriptionRegistry()
        calls = []
        registry.add("inputs/+/isPressed", lambda m: calls.append(("state", m.topic)))
        registry.add("inputs/#", lambda m: calls.append(("any", m.topic)))
        registry.add("outputs/#", lambda m: calls.append(("outputs", m.topic)))

        matched = registry.dispatch(message("inputs/button1/isPressed"))

        assert matched == 2
        assert calls == [("state", "inputs/button1/isPressed"), ("any", "inputs/button1/isPressed")]

    def test_only_matching_handlers_called(self):
        registry = SubscriptionRegistry()
        calls = []
        registry.add("inputs/+/isPressed", lambda m: calls.append("state"))
        registry.add("inputs/#", lambda m: calls.append("any"))

        assert registry.dispatch(message("inputs/button1/lastChangedAt")) == 1
        assert calls == ["any"]

    def test_no_match_returns_zero(self, caplog):
        registry = SubscriptionRegistry()
        registry.add("inputs/#", lambda m: pytest.fail("must not be called"))
        with caplog.at_level(logging.DEBUG, logger=REGISTRY_LOGGER):
            assert registry.dispatch(message("outputs/led1")) == 0
        assert "No handler matched" in caplog.text

    def test_handler_receives_message_unchanged(self):
        registry = SubscriptionRegistry()
        received = []
        registry.add("inputs/#", received.append)
        inbound = Message(topic="inputs/button1/isPressed", payload=b"\x00\x01", qos=QoS.EXACTLY_ONCE, retain=True)

        registry.dispatch(inbound)

        assert received == [inbound]

    def test_failing_handler_does_not_stop_others(self, caplog):
        registry = SubscriptionRegistry()
        calls = []

        def broken(m):
            raise RuntimeError("boom")

        registry.add("inputs/#", broken, label="broken")
        registry.add("inputs/+/isPressed", lambda m: calls.append(m.topic), label="working")

        with caplog.at_level(logging.INFO, logger=REGISTRY_LOGGER):
            matched = registry.dispatch(message("inputs/button1/isPressed"))

        assert matched == 2
        assert calls == ["inputs/button1/isPressed"]
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "HandlerError" in errors[0].getMessage()
        assert "boom" in errors[0].getMessage()
        assert errors[0].exc_info is not None
        assert errors[0].handler == "broken"

    def test_each_match_is_logged_with_label(self, caplog):
        registry = SubscriptionRegistry()
        registry.add("inputs/#", lambda m: None, label="on_button_changed")

        with caplog.at_level(logging.INFO, logger=REGISTRY_LOGGER):
            registry.dispatch(message("inputs/button1/isPressed", "true"))

        record = next(r for r in caplog.records if r.levelno == logging.INFO)
        assert "inputs/button1/isPressed" in record.getMessage()
        assert "'true'" in record.getMessage()
        assert "on_button_changed" in record.getMessage()
        assert record.topic == "inputs/button1/isPressed"
        assert record.pattern == "inputs/#"

    def test_long_payload_truncated_in_log(self, caplog):
        registry = SubscriptionRegistry()
        registry.add("inputs/#", lambda m: None)
        with caplog.at_level(logging.INFO, logger=REGISTRY_LOGGER):
            registry.dispatch(message("inputs/blob", "x" * 500))
        assert "x" * 101 not in caplog.text
        assert "..." in caplog.text

    def test_handler_may_mutate_registry_during_dispatch(self):
        registry = SubscriptionRegistry()
        calls = []

        def subscribe_more(m):
            calls.append("first")
            registry.add("inputs/late/#", lambda m: calls.append("late"))
            registry.remove("inputs/#")

        registry.add("inputs/#", subscribe_more)

        assert registry.dispatch(message("inputs/late/x")) == 1
        assert calls == ["first"]
        assert registry.dispatch(message("inputs/late/x")) == 1
        assert calls == ["first", "late"]


# ============================================================================
# CONCURRENCY
# ============================================================================


class TestConcurrency:

    def test_concurrent_registration(self):
        registry = SubscriptionRegistry()
        thread_count = 8
        per_thread = 50

        def register(index):
            for i in range(per_thread):
                registry.add(f"devices/{index}/{i}", lambda m: None)

        threads = [threading.Thread(target=register, args=(n,)) for n in range(thread_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry) == thread_count * per_thread

    def test_dispatch_while_registering(self):
        registry = SubscriptionRegistry()
        registry.add("inputs/#", lambda m: None)
        stop = threading.Event()
        errors = []

        def churn():
            i = 0
            while not stop.is_set():
                registry.add(f"churn/{i}", lambda m: None)
                registry.remove(f"churn/{i}")
                i += 1

        thread = threading.Thread(target=churn)
        thread.start()
        try:
            for _ in range(500):
                try:
                    assert registry.dispatch(message("inputs/button1")) == 1
                except Exception as e:
                    errors.append(e)
        finally:
            stop.set()
            thread.join()

        assert errors == []
