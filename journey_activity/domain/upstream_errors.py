from __future__ import annotations

from typing import Any, Literal, Protocol


UpsertFailureKind = Literal["auth_failure", "not_found", "bad_request", "upstream_error"]


class UpstreamErrorLike(Protocol):
    @property
    def category(self) -> str: ...

    @property
    def retryable(self) -> bool: ...


def classify_upsert_failure(status_codes: list[int | None]) -> UpsertFailureKind:
    """Collapse the per-candidate outcomes of one upsert into a single failure kind.

    ``None`` marks a candidate that never got an HTTP response (timeout, DNS, reset).
    """
    if 401 in status_codes:
        return "auth_failure"
    if 404 in status_codes:
        return "not_found"
    if status_codes and all(code == 400 for code in status_codes):
        return "bad_request"
    return "upstream_error"


def upstream_error_detail(*, operation: str, exc: UpstreamErrorLike) -> dict[str, Any]:
    detail: dict[str, Any] = {
        "type": "upstream_error",
        "provider": "marketing_cloud",
        "operation": operation,
        "category": exc.category,
        "retryable": exc.retryable,
        "message": str(exc),
    }
    kind = getattr(exc, "kind", None)
    if kind:
        detail["kind"] = kind
    return detail
