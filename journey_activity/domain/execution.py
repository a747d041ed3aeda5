from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from journey_activity.domain.normalization import NormalizedPayload, normalize_execute_payload
from journey_activity.domain.upstream_errors import upstream_error_detail
from journey_activity.observability import incr_metric, log_event
from journey_activity.providers.marketing_cloud import client as mc_client

if TYPE_CHECKING:
    from journey_activity.config import Settings


ExecutionOutcome = Literal["Success", "Error"]


class ExecutionState(str, Enum):
    RECEIVED = "received"
    NORMALIZED = "normalized"
    AUTHENTICATED = "authenticated"
    UPSERTED_SUCCESS = "upserted_success"
    UPSERTED_FAILURE = "upserted_failure"
    AUDITED = "audited"
    ACKNOWLEDGED = "acknowledged"


@dataclass(frozen=True)
class AuditRecord:
    record_key: str
    correlation_id: str
    execution_timestamp: datetime
    outcome: ExecutionOutcome
    message: str
    error_detail: str | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            "SubscriberKey": self.record_key,
            "ActivityUUID": self.correlation_id,
            "ExecutionDate": self.execution_timestamp.isoformat(),
            "Status": self.outcome,
            "CustomMessage": self.message,
            "ErrorLog": self.error_detail,
        }


@dataclass
class ExecutionReport:
    states: list[ExecutionState] = field(default_factory=list)
    payload: NormalizedPayload | None = None
    upsert: mc_client.UpsertResult | None = None
    audit_record: AuditRecord | None = None
    error: str | None = None

    @property
    def state(self) -> ExecutionState | None:
        return self.states[-1] if self.states else None

    def advance(self, state: ExecutionState) -> None:
        self.states.append(state)


def record_execution(
    record: AuditRecord,
    *,
    config: mc_client.MarketingCloudConfig,
    collection_key: str,
    request_id: str | None = None,
) -> None:
    """Best-effort write to the execution log data extension. Never raises."""
    try:
        mc_client.insert_async_row(config, collection_key=collection_key, values=record.to_row())
    except Exception as exc:
        incr_metric("activity.audit.failed")
        log_event(
            "execution_audit_failed",
            level=logging.WARNING,
            request_id=request_id,
            record_key=record.record_key,
            correlation_id=record.correlation_id,
            collection_key=collection_key,
            error=str(exc),
        )
        return
    incr_metric("activity.audit.recorded", outcome=record.outcome)


def _failure_text(exc: Exception, operation: str) -> str:
    if isinstance(exc, (mc_client.MarketingCloudAuthError, mc_client.MarketingCloudUpsertError)):
        return json.dumps(upstream_error_detail(operation=operation, exc=exc), sort_keys=True)
    return str(exc) or exc.__class__.__name__


def run_execution(
    body: Any,
    *,
    settings: "Settings",
    request_id: str | None = None,
) -> ExecutionReport:
    """Drive one execute callback from received to acknowledged.

    Every step has a fallback so the report always ends in ``ACKNOWLEDGED``.
    """
    report = ExecutionReport()
    report.advance(ExecutionState.RECEIVED)
    config = settings.marketing_cloud()

    try:
        payload = normalize_execute_payload(
            body,
            secret=settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            fields=settings.in_argument_fields(),
            defaults=settings.normalization_defaults(),
        )
    except Exception as exc:
        # normalize_execute_payload is total; this only guards against misconfiguration.
        log_event("execute_normalization_crashed", level=logging.ERROR, request_id=request_id, error=str(exc))
        defaults = settings.normalization_defaults()
        payload = NormalizedPayload(
            record_key=defaults.record_key,
            message=defaults.message,
            correlation_id=defaults.correlation_id(),
            defaulted=("record_key", "message", "correlation_id"),
        )
    report.payload = payload
    report.advance(ExecutionState.NORMALIZED)
    incr_metric("activity.execute.normalized", source=payload.source)
    if payload.defaulted:
        incr_metric("activity.execute.normalization_default", source=payload.source)
        log_event(
            "execute_normalization_default",
            request_id=request_id,
            source=payload.source,
            defaulted=payload.defaulted,
            token_error=payload.token_error,
        )
    log_event(
        "execute_payload_normalized",
        request_id=request_id,
        source=payload.source,
        record_key=payload.record_key,
        correlation_id=payload.correlation_id,
    )

    try:
        credential = mc_client.get_credential(config)
        report.advance(ExecutionState.AUTHENTICATED)
        result = mc_client.upsert_row(
            config,
            collection_key=settings.de_external_key,
            record_key=payload.record_key,
            message=payload.message,
            fields=settings.row_fields(),
            credential=credential,
        )
    except mc_client.MarketingCloudAuthError as exc:
        report.error = _failure_text(exc, "authenticate")
    except Exception as exc:
        report.error = _failure_text(exc, "upsert_row")
    else:
        report.upsert = result
        if not result.ok and result.error is not None:
            report.error = _failure_text(result.error, "upsert_row")

    if report.upsert is not None and report.upsert.ok:
        report.advance(ExecutionState.UPSERTED_SUCCESS)
        incr_metric("activity.execute.upserted")
        log_event(
            "execute_upsert_succeeded",
            request_id=request_id,
            record_key=payload.record_key,
            candidate=report.upsert.candidate,
        )
    else:
        report.advance(ExecutionState.UPSERTED_FAILURE)
        incr_metric("activity.execute.upsert_failed")
        log_event(
            "execute_upsert_failed",
            level=logging.ERROR,
            request_id=request_id,
            record_key=payload.record_key,
            error=report.error,
        )

    record = AuditRecord(
        record_key=payload.record_key,
        correlation_id=payload.correlation_id,
        execution_timestamp=datetime.now(timezone.utc),
        outcome="Success" if report.error is None else "Error",
        message=payload.message,
        error_detail=report.error,
    )
    report.audit_record = record
    if settings.activity_log_enabled:
        record_execution(
            record,
            config=config,
            collection_key=settings.activity_log_de_key,
            request_id=request_id,
        )
    report.advance(ExecutionState.AUDITED)

    report.advance(ExecutionState.ACKNOWLEDGED)
    return report
