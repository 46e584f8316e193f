from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pod_pipeline.metrics import ApiUsageTracker, estimate_cost


def test_estimate_cost_prefers_operation_specific_rate():
    assert estimate_cost("openai", "gpt-4o-mini", "chat") == 0.00015
    assert estimate_cost("openai", "dall-e-2", "edit") == 0.02
    assert estimate_cost("kie", "image", "generate") == 0.03
    assert estimate_cost("unknown", "model", "op") == 0.0


def test_cost_summary_windows_and_breakdown():
    now = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
    clock_values = [now - timedelta(days=3), now - timedelta(hours=1), now]
    tracker = ApiUsageTracker(clock=lambda: clock_values.pop(0) if clock_values else now)

    tracker.record_call("openai", "gpt-image-1", "generate")
    tracker.record_call("kie", "image", "edit")
    tracker.record_call("printful", "mockup-generator", "mockup")

    summary = tracker.cost_summary()

    assert summary["totalCalls"] == 3
    assert summary["totalCost"] == 0.07
    assert summary["last24h"] == {"calls": 2, "cost": 0.03}
    assert summary["last7d"]["calls"] == 3
    assert summary["byProvider"]["openai"] == {"calls": 1, "cost": 0.04}
    assert summary["breakdown"]["kie/image/edit"]["calls"] == 1


def test_tracker_keeps_only_most_recent_calls():
    tracker = ApiUsageTracker(max_calls=2)
    for _ in range(3):
        tracker.record_call("kie", "image", "generate")

    assert len(tracker.calls()) == 2
