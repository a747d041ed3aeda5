from __future__ import annotations

import json
import logging
import re
from typing import Any
from urllib.parse import parse_qsl

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse

from journey_activity.auth import extract_activity_token, verify_activity_token
from journey_activity.config import settings
from journey_activity.domain.execution import run_execution
from journey_activity.models.activity import LifecycleContext, StopResponse
from journey_activity.observability import incr_metric, log_event


router = APIRouter(tags=["activity"])

LIFECYCLE_ACK = "OK"
EXECUTE_ACK = "Execute"
_RAW_TOKEN_CONTENT_TYPES = {"application/jwt", "text/plain"}
_FORM_KEY = re.compile(r"^([^\[\]]+)((?:\[[^\[\]]*\])*)$")
_FORM_SEGMENT = re.compile(r"\[([^\[\]]*)\]")


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _content_type(request: Request) -> str:
    return (request.headers.get("content-type") or "").split(";")[0].strip().lower()


def _form_path(name: str) -> list[str]:
    match = _FORM_KEY.match(name)
    if not match:
        return [name]
    return [match.group(1), *_FORM_SEGMENT.findall(match.group(2))]


def _listify(node: Any) -> Any:
    if not isinstance(node, dict):
        return node
    items = {key: _listify(value) for key, value in node.items()}
    if items and all(key.isdigit() for key in items):
        return [items[key] for key in sorted(items, key=int)]
    return items


def _form_body(text: str) -> dict[str, Any]:
    """Decode a urlencoded body, nesting ``a[0][b]=c`` style keys into dicts and lists.

    The first value wins for a repeated key; a key that is both a leaf and a parent keeps the leaf.
    """
    body: dict[str, Any] = {}
    for name, value in parse_qsl(text, keep_blank_values=True):
        node = body
        path = _form_path(name)
        for segment in path[:-1]:
            child = node.setdefault(segment, {})
            if not isinstance(child, dict):
                break
            node = child
        else:
            last = path[-1] or str(len(node))
            node.setdefault(last, value)
    return {key: _listify(value) for key, value in body.items()}


async def _read_activity_body(request: Request, request_id: str | None = None) -> Any:
    raw_body = await request.body()
    text = raw_body.decode("utf-8", errors="replace")
    content_type = _content_type(request)

    # Journey Builder posts the signed token as a raw body on some installs.
    if content_type in _RAW_TOKEN_CONTENT_TYPES:
        return {"jwt": text.strip()}
    if not text.strip():
        return {}
    if content_type == "application/x-www-form-urlencoded":
        return _form_body(text)

    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        log_event(
            "activity_body_unparseable",
            level=logging.WARNING,
            request_id=request_id,
            content_type=content_type,
            body_length=len(raw_body),
        )
        return {}
    if isinstance(payload, (dict, str)):
        return payload
    return {}


def _check_lifecycle_token(step: str, body: Any, request_id: str | None) -> None:
    token = extract_activity_token(body)
    if not token:
        return
    verification = verify_activity_token(token, settings.jwt_secret, settings.jwt_algorithm)
    if verification.valid:
        log_event("activity_token_verified", request_id=request_id, step=step)
        return
    incr_metric("activity.token.rejected", step=step)
    log_event(
        "activity_token_rejected",
        level=logging.WARNING,
        request_id=request_id,
        step=step,
        reason=verification.reason,
        continuing=True,
    )


async def _acknowledge_lifecycle(step: str, request: Request) -> PlainTextResponse:
    req_id = _request_id(request)
    incr_metric("activity.lifecycle.received", step=step)
    try:
        body = await _read_activity_body(request, req_id)
        context = LifecycleContext.from_body(body)
        _check_lifecycle_token(step, body, req_id)
        log_event(
            "activity_lifecycle_acknowledged",
            request_id=req_id,
            step=step,
            activity_object_id=context.activity_object_id,
            definition_instance_id=context.definition_instance_id,
            request_object_id=context.request_object_id,
        )
    except Exception as exc:
        log_event(
            "activity_lifecycle_failed",
            level=logging.ERROR,
            request_id=req_id,
            step=step,
            error=str(exc),
        )
    return PlainTextResponse(LIFECYCLE_ACK)


@router.post("/save", response_class=PlainTextResponse)
async def save_activity(request: Request):
    return await _acknowledge_lifecycle("save", request)


@router.post("/validate", response_class=PlainTextResponse)
async def validate_activity(request: Request):
    return await _acknowledge_lifecycle("validate", request)


@router.post("/publish", response_class=PlainTextResponse)
async def publish_activity(request: Request):
    return await _acknowledge_lifecycle("publish", request)


@router.post("/execute", response_class=PlainTextResponse)
async def execute_activity(request: Request):
    req_id = _request_id(request)
    incr_metric("activity.lifecycle.received", step="execute")
    try:
        body = await _read_activity_body(request, req_id)
        report = await run_in_threadpool(run_execution, body, settings=settings, request_id=req_id)
        log_event(
            "execute_acknowledged",
            request_id=req_id,
            record_key=report.payload.record_key if report.payload else None,
            states=[state.value for state in report.states],
            outcome=report.audit_record.outcome if report.audit_record else None,
        )
    except Exception as exc:
        incr_metric("activity.execute.crashed")
        log_event(
            "execute_crashed_acknowledged",
            level=logging.ERROR,
            request_id=req_id,
            error=str(exc),
        )
    return PlainTextResponse(EXECUTE_ACK)


@router.post("/stop", response_model=StopResponse)
async def stop_activity(request: Request):
    incr_metric("activity.lifecycle.received", step="stop")
    log_event("activity_lifecycle_acknowledged", request_id=_request_id(request), step="stop")
    return StopResponse()
