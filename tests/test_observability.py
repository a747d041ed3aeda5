import json
import logging

from journey_activity.observability import (
    MAX_LOGGED_TEXT,
    incr_metric,
    log_event,
    logger,
    metric_key,
    metrics_snapshot,
    reset_metrics,
)


def _last_event(caplog) -> dict:
    return json.loads(caplog.records[-1].getMessage())


def test_log_event_redacts_credential_fields(caplog):
    with caplog.at_level(logging.INFO, logger=logger.name):
        log_event(
            "marketing_cloud_token_payload",
            request_id="req-1",
            client_secret="s3cr3t",
            body={"keyValue": "eyJhbGciOi", "inArguments": [{"contactKey": "C-1"}]},
            headers={"Authorization": "Bearer tok"},
            jwt="",
        )

    event = _last_event(caplog)
    assert event["request_id"] == "req-1"
    assert event["client_secret"] == "[redacted]"
    assert event["body"]["keyValue"] == "[redacted]"
    assert event["body"]["inArguments"] == [{"contactKey": "C-1"}]
    assert event["headers"]["Authorization"] == "[redacted]"
    # empty values carry no secret and stay visible for debugging
    assert event["jwt"] == ""


def test_log_event_clips_long_upstream_text(caplog):
    with caplog.at_level(logging.INFO, logger=logger.name):
        log_event("marketing_cloud_upsert_candidate_failed", response_text="x" * (MAX_LOGGED_TEXT + 25))

    text = _last_event(caplog)["response_text"]
    assert text.startswith("x" * MAX_LOGGED_TEXT)
    assert text.endswith("...[25 more]")


def test_metric_keys_are_label_order_independent():
    assert metric_key("activity.execute.upserted") == "activity.execute.upserted"
    assert metric_key("m", b=2, a="x") == metric_key("m", a="x", b=2) == "m|a=x,b=2"


def test_metrics_snapshot_filters_by_prefix():
    reset_metrics()
    incr_metric("activity.execute.received")
    incr_metric("marketing_cloud.token.requested", 2)

    assert metrics_snapshot("marketing_cloud.") == {"marketing_cloud.token.requested": 2}
    assert len(metrics_snapshot()) == 2
    reset_metrics()
