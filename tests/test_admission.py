from __future__ import annotations

import pytest

from edgeproxy import admission
from edgeproxy.admission import AdmissionController, client_key_for


class DummyLogger:
    def __init__(self) -> None:
        self.warning_calls: list[tuple[tuple, dict]] = []

    def warning(self, *args, **kwargs) -> None:  # noqa: ANN001
        self.warning_calls.append((args, kwargs))

    def info(self, *args, **kwargs) -> None:  # noqa: ANN001
        return None

    def debug(self, *args, **kwargs) -> None:  # noqa: ANN001
        return None


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def test_client_key_prefixes_address() -> None:
    assert client_key_for("203.0.113.7") == "ip_203.0.113.7"


def test_admits_up_to_limit_then_denies(monkeypatch, clock):
    logger = DummyLogger()
    monkeypatch.setattr(admission, "LOGGER", logger)
    controller = AdmissionController(max_requests=2, window_seconds=60, clock=clock)

    first = controller.admit("ip_a")
    second = controller.admit("ip_a")
    third = controller.admit("ip_a")

    assert first.allowed is True and first.count == 1
    assert second.allowed is True and second.count == 2
    assert third.allowed is False and third.count == 3
    assert logger.warning_calls, "Expected warning when a client is denied"
    assert logger.warning_calls[0][1]["key"] == "ip_a"


def test_denied_requests_still_count(clock):
    controller = AdmissionController(max_requests=1, window_seconds=60, clock=clock)
    counts = [controller.admit("ip_a").count for _ in range(4)]
    assert counts == [1, 2, 3, 4]


def test_clients_are_counted_independently(clock):
    controller = AdmissionController(max_requests=1, window_seconds=60, clock=clock)
    assert controller.admit("ip_a").allowed is True
    assert controller.admit("ip_b").allowed is True
    assert controller.admit("ip_a").allowed is False
    assert len(controller) == 2


def test_window_resets_after_expiry(clock):
    controller = AdmissionController(max_requests=1, window_seconds=60, clock=clock)
    controller.admit("ip_a")
    assert controller.admit("ip_a").allowed is False

    clock.now += 60
    decision = controller.admit("ip_a")
    assert decision.allowed is True
    assert decision.count == 1


def test_window_does_not_slide_on_traffic(clock):
    controller = AdmissionController(max_requests=100, window_seconds=60, clock=clock)
    controller.admit("ip_a")
    clock.now += 59
    assert controller.admit("ip_a").count == 2
    clock.now += 1
    assert controller.admit("ip_a").count == 1


def test_retry_after_reports_remaining_window(clock):
    controller = AdmissionController(max_requests=0, window_seconds=60, clock=clock)
    assert controller.admit("ip_a").retry_after == 60
    clock.now += 59.5
    assert controller.admit("ip_a").retry_after == 1


def test_zero_limit_denies_everything(clock):
    controller = AdmissionController(max_requests=0, window_seconds=60, clock=clock)
    assert controller.admit("ip_a").allowed is False


def test_denials_increment_counter(clock):
    controller = AdmissionController(max_requests=1, window_seconds=60, clock=clock)
    before = admission.DENIED_COUNTER.value
    controller.admit("ip_a")
    controller.admit("ip_a")
    controller.admit("ip_a")
    assert admission.DENIED_COUNTER.value == before + 2


def test_sweep_drops_only_expired_windows(clock):
    controller = AdmissionController(max_requests=5, window_seconds=60, clock=clock)
    controller.admit("ip_old")
    clock.now += 30
    controller.admit("ip_new")
    clock.now += 30

    assert controller.sweep() == 1
    assert len(controller) == 1
    assert controller.admit("ip_new").count == 2


def test_reset_forgets_client(clock):
    controller = AdmissionController(max_requests=1, window_seconds=60, clock=clock)
    controller.admit("ip_a")
    controller.reset("ip_a")
    assert controller.admit("ip_a").allowed is True
    controller.reset("ip_missing")


def test_tracked_gauge_follows_window_count(clock):
    controller = AdmissionController(max_requests=1, window_seconds=60, clock=clock)
    controller.admit("ip_a")
    controller.admit("ip_b")
    assert controller.tracked_gauge.value == 2
