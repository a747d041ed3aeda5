from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from journey_activity.config import settings
from journey_activity.models.activity import (
    ConnectionTestResponse,
    DataExtensionRef,
    MetricsSnapshotResponse,
    UpdateTestResponse,
)
from journey_activity.observability import log_event, mask_secret, metrics_snapshot
from journey_activity.providers.marketing_cloud import client as mc_client


router = APIRouter(tags=["diagnostics"])


@router.get("/test-sfmc", response_model=ConnectionTestResponse)
async def test_marketing_cloud_connection(request: Request):
    """Run a token exchange against the configured account without writing anything."""
    req_id = getattr(request.state, "request_id", None)
    if not settings.sfmc_client_id or not settings.sfmc_client_secret:
        return ConnectionTestResponse(status="error", message="SFMC credentials not configured")

    config = settings.marketing_cloud()
    log_event(
        "marketing_cloud_connection_test",
        request_id=req_id,
        client_id=mask_secret(config.client_id),
        auth_base_url=config.auth_base_url,
    )
    try:
        credential = await run_in_threadpool(mc_client.retrieve_token, config)
    except mc_client.MarketingCloudAuthError as exc:
        log_event(
            "marketing_cloud_connection_test_failed",
            level=logging.WARNING,
            request_id=req_id,
            category=exc.category,
            error=str(exc),
        )
        body = ConnectionTestResponse(status="error", message="SFMC connection failed", error=str(exc))
        return JSONResponse(status_code=500, content=body.model_dump())

    return ConnectionTestResponse(
        status="success",
        message="SFMC connection successful",
        rest_base_url=credential.rest_base_url,
        data_extension=DataExtensionRef(name=settings.de_name, external_key=settings.de_external_key),
    )


@router.get("/test-update-existing", response_model=UpdateTestResponse)
async def test_update_existing_row(request: Request):
    """Rewrite the message column of a known row through the full candidate fallback."""
    req_id = getattr(request.state, "request_id", None)
    record_key = (settings.test_update_record_key or "").strip()
    if not record_key:
        return UpdateTestResponse(status="error", message="TEST_UPDATE_RECORD_KEY not configured")

    test_message = f"TEST UPDATE - {datetime.now(timezone.utc).isoformat()}"
    log_event(
        "marketing_cloud_update_test",
        request_id=req_id,
        record_key=record_key,
        collection_key=settings.de_external_key,
    )
    try:
        result = await run_in_threadpool(
            mc_client.upsert_row,
            settings.marketing_cloud(),
            collection_key=settings.de_external_key,
            record_key=record_key,
            message=test_message,
            fields=settings.row_fields(),
        )
    except mc_client.MarketingCloudAuthError as exc:
        error = str(exc)
    else:
        if result.ok:
            return UpdateTestResponse(
                status="success",
                message="Update test completed",
                contact_key=record_key,
                test_message=test_message,
                candidate=result.candidate,
                result=result.body,
            )
        error = str(result.error)

    log_event("marketing_cloud_update_test_failed", level=logging.WARNING, request_id=req_id, error=error)
    body = UpdateTestResponse(
        status="error",
        message="Update test failed",
        contact_key=record_key,
        test_message=test_message,
        error=error,
    )
    return JSONResponse(status_code=500, content=body.model_dump())


@router.get("/ping", response_class=PlainTextResponse)
@router.post("/ping", response_class=PlainTextResponse)
async def ping():
    return PlainTextResponse("pong")


@router.get("/diagnostics/metrics", response_model=MetricsSnapshotResponse)
async def get_metrics(prefix: str | None = None):
    return MetricsSnapshotResponse(counters=metrics_snapshot(prefix))
