from __future__ import annotations

import json
import logging
from collections import Counter
from threading import Lock
from typing import Any


logger = logging.getLogger("journey_activity")

_metrics_lock = Lock()
_metrics_counter: Counter[str] = Counter()

# Field names that carry upstream credentials or Journey Builder tokens.
REDACTED_FIELDS = frozenset(
    {"access_token", "authorization", "client_secret", "jwt", "keyvalue", "token"}
)
MAX_LOGGED_TEXT = 500


def _normalize(value: Any, *, key: str | None = None) -> Any:
    if key is not None and key.lower() in REDACTED_FIELDS and value:
        return "[redacted]"
    if value is None or isinstance(value, (int, float, bool)):
        return value
    if isinstance(value, str):
        if len(value) > MAX_LOGGED_TEXT:
            return f"{value[:MAX_LOGGED_TEXT]}...[{len(value) - MAX_LOGGED_TEXT} more]"
        return value
    if isinstance(value, dict):
        return {str(k): _normalize(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize(v) for v in value]
    return _normalize(str(value))


def mask_secret(value: str | None, visible: int = 8) -> str | None:
    """Keep a short prefix of a credential so logs can tell deployments apart."""
    if not value:
        return None
    return f"{value[:visible]}..."


def configure_logging(level: int | str = logging.INFO) -> None:
    if logger.handlers:
        logger.setLevel(level)
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)


def metric_key(name: str, **labels: Any) -> str:
    """``name|k=v,...`` with labels sorted; counters for the same labels always share a key."""
    if not labels:
        return name
    ordered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}|{ordered}"


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    key = metric_key(name, **{k: _normalize(v) for k, v in labels.items()})
    with _metrics_lock:
        _metrics_counter[key] += value


def metrics_snapshot(prefix: str | None = None) -> dict[str, int]:
    with _metrics_lock:
        if prefix is None:
            return dict(_metrics_counter)
        return {key: count for key, count in _metrics_counter.items() if key.startswith(prefix)}


def reset_metrics() -> None:
    with _metrics_lock:
        _metrics_counter.clear()


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    """Emit one JSON line. Credential-bearing fields are redacted and long text is clipped."""
    payload: dict[str, Any] = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    for key, value in fields.items():
        payload[key] = _normalize(value, key=key)
    logger.log(level, json.dumps(payload, sort_keys=True))
