import threading

import pytest

from loopgate.tokens import InMemoryTokenTracker, TokenUsage


def test_record_usage_accumulates() -> None:
    tracker = InMemoryTokenTracker()
    tracker.record_usage(TokenUsage(100, 20, is_premium_request=True))
    tracker.record_usage(TokenUsage(50, 5))

    metrics = tracker.session_metrics()

    assert metrics.cumulative_input_tokens == 150
    assert metrics.cumulative_output_tokens == 25
    assert metrics.premium_request_count == 1
    assert metrics.per_iteration == (TokenUsage(100, 20, True), TokenUsage(50, 5))


def test_reset_and_restore() -> None:
    tracker = InMemoryTokenTracker()
    tracker.record_usage(TokenUsage(10, 10, True))
    tracker.reset_session()

    assert tracker.session_metrics().premium_request_count == 0
    assert tracker.session_metrics().per_iteration == ()

    tracker.restore_metrics(500, 40, 7)
    tracker.record_usage(TokenUsage(1, 1, True))
    metrics = tracker.session_metrics()

    assert metrics.cumulative_input_tokens == 501
    assert metrics.premium_request_count == 8


def test_negative_usage_is_rejected() -> None:
    with pytest.raises(ValueError):
        TokenUsage(-1, 0)


def test_concurrent_recording_is_consistent() -> None:
    tracker = InMemoryTokenTracker()

    def _record() -> None:
        for _ in range(200):
            tracker.record_usage(TokenUsage(1, 2, True))

    threads = [threading.Thread(target=_record) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    metrics = tracker.session_metrics()
    assert metrics.premium_request_count == 800
    assert metrics.cumulative_output_tokens == 1600
