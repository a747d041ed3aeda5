from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable

import httpx

from journey_activity.domain.upstream_errors import UpsertFailureKind, classify_upsert_failure
from journey_activity.observability import incr_metric, log_event


_EP_TOKEN = "/v2/token"
_EP_ROWSET = "/hub/v1/dataevents/key:{collection_key}/rowset"
_EP_ASYNC_ROWS = "/data/v1/async/dataextensions/key:{collection_key}/rows"

_TOKEN_EXPIRY_MARGIN_SECONDS = 30
_DEFAULT_TOKEN_TTL_SECONDS = 1200


@dataclass(frozen=True)
class MarketingCloudConfig:
    client_id: str
    client_secret: str
    auth_base_url: str
    rest_base_url: str
    account_id: str | None = None
    scope: str | None = None
    auth_timeout_seconds: float = 10.0
    write_timeout_seconds: float = 15.0
    cache_tokens: bool = False


@dataclass(frozen=True)
class UpstreamCredential:
    access_token: str
    rest_base_url: str
    expires_at: float | None = None

    def is_fresh(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now < self.expires_at - _TOKEN_EXPIRY_MARGIN_SECONDS


@dataclass(frozen=True)
class RowFields:
    """Column names of the target data extension."""
    record_key: str = "SubscriberKey"
    message: str = "CustomText"


class MarketingCloudAuthError(Exception):
    """Token exchange failed; no write can be attempted without a bearer token."""

    @property
    def category(self) -> str:
        message = str(self).lower()
        if "connectivity error" in message or "http 5" in message or "http 429" in message:
            return "transient"
        if "missing marketing cloud" in message or "http 401" in message or "http 400" in message:
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


class MarketingCloudUpsertError(Exception):
    """Every upsert candidate was rejected."""

    def __init__(self, message: str, *, kind: UpsertFailureKind, status_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def category(self) -> str:
        if self.kind == "upstream_error" and (self.status_code is None or self.status_code >= 500):
            return "transient"
        if self.kind in {"auth_failure", "not_found", "bad_request"}:
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


@dataclass(frozen=True)
class UpsertCandidate:
    name: str
    path_template: str
    build_payload: Callable[[dict[str, Any], dict[str, Any]], Any]

    def path(self, collection_key: str) -> str:
        return self.path_template.format(collection_key=collection_key)


@dataclass(frozen=True)
class UpsertResult:
    ok: bool
    body: Any = None
    candidate: str | None = None
    error: MarketingCloudUpsertError | None = None

    @classmethod
    def success(cls, body: Any, candidate: str) -> "UpsertResult":
        return cls(ok=True, body=body, candidate=candidate)

    @classmethod
    def failure(cls, error: MarketingCloudUpsertError) -> "UpsertResult":
        return cls(ok=False, error=error)


def _rowset_payload(keys: dict[str, Any], values: dict[str, Any]) -> list[dict[str, Any]]:
    return [{"keys": dict(keys), "values": dict(values)}]


def _async_rows_payload(keys: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
    return {"items": [dict(values)]}


# Tried in order; append new shapes at the end so existing accounts keep the same winner.
UPSERT_CANDIDATES: tuple[UpsertCandidate, ...] = (
    UpsertCandidate(name="sync_rowset", path_template=_EP_ROWSET, build_payload=_rowset_payload),
    UpsertCandidate(name="async_rows", path_template=_EP_ASYNC_ROWS, build_payload=_async_rows_payload),
)


def _build_base_url(base_url: str | None) -> str:
    return (base_url or "").strip().rstrip("/")


def _headers(access_token: str | None = None) -> dict[str, str]:
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


def _post_json(
    *,
    url: str,
    headers: dict[str, str],
    json_payload: Any,
    timeout_seconds: float,
) -> httpx.Response:
    with httpx.Client(timeout=timeout_seconds) as client:
        return client.post(url, headers=headers, json=json_payload)


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class _TokenCache:
    """Single-writer token cache shared by concurrent execute calls.

    A failed refresh is re-raised to every caller that was already queued behind it.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[tuple[str, str, str | None, str | None], UpstreamCredential] = {}
        self._failures: dict[tuple[str, str, str | None, str | None], tuple[float, MarketingCloudAuthError]] = {}

    def get_or_refresh(
        self,
        config: MarketingCloudConfig,
        fetch: Callable[[MarketingCloudConfig], UpstreamCredential],
    ) -> UpstreamCredential:
        key = (config.auth_base_url, config.client_id, config.account_id, config.scope)
        requested_at = time.monotonic()
        with self._lock:
            cached = self._entries.get(key)
            if cached and cached.is_fresh(time.time()):
                incr_metric("marketing_cloud.token.cache_hit")
                return cached
            failure = self._failures.get(key)
            if failure and failure[0] >= requested_at:
                incr_metric("marketing_cloud.token.shared_failure")
                raise failure[1]
            try:
                credential = fetch(config)
            except MarketingCloudAuthError as exc:
                self._failures[key] = (time.monotonic(), exc)
                raise
            self._failures.pop(key, None)
            self._entries[key] = credential
            return credential

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._failures.clear()


_token_cache = _TokenCache()


def reset_token_cache() -> None:
    _token_cache.clear()


def retrieve_token(config: MarketingCloudConfig) -> UpstreamCredential:
    """Exchange client credentials for a bearer token (client_credentials grant)."""
    if not config.client_id or not config.client_secret:
        raise MarketingCloudAuthError("Missing Marketing Cloud client credentials")
    auth_base = _build_base_url(config.auth_base_url)
    if not auth_base:
        raise MarketingCloudAuthError("Missing Marketing Cloud auth base URL")

    payload: dict[str, Any] = {
        "grant_type": "client_credentials",
        "client_id": config.client_id,
        "client_secret": config.client_secret,
    }
    if config.account_id:
        payload["account_id"] = config.account_id
    if config.scope:
        payload["scope"] = config.scope

    incr_metric("marketing_cloud.token.requested")
    try:
        response = _post_json(
            url=f"{auth_base}{_EP_TOKEN}",
            headers=_headers(),
            json_payload=payload,
            timeout_seconds=config.auth_timeout_seconds,
        )
    except httpx.HTTPError as exc:
        raise MarketingCloudAuthError(f"Marketing Cloud connectivity error: {exc}") from exc

    if response.status_code >= 400:
        raise MarketingCloudAuthError(
            f"Marketing Cloud token endpoint returned HTTP {response.status_code}: {response.text[:200]}"
        )
    try:
        data = response.json()
    except ValueError as exc:
        raise MarketingCloudAuthError("Marketing Cloud returned non-JSON token response") from exc

    access_token = data.get("access_token") if isinstance(data, dict) else None
    if not access_token:
        raise MarketingCloudAuthError("Marketing Cloud token response missing access_token")

    instance_url = data.get("rest_instance_url")
    if not isinstance(instance_url, str):
        instance_url = None
    rest_base = _build_base_url(instance_url) or _build_base_url(config.rest_base_url)
    if not rest_base:
        raise MarketingCloudAuthError("Missing Marketing Cloud REST base URL")

    try:
        expires_in = int(data.get("expires_in") or _DEFAULT_TOKEN_TTL_SECONDS)
    except (TypeError, ValueError):
        expires_in = _DEFAULT_TOKEN_TTL_SECONDS

    log_event("marketing_cloud_token_retrieved", rest_base_url=rest_base, expires_in=expires_in)
    return UpstreamCredential(
        access_token=access_token,
        rest_base_url=rest_base,
        expires_at=time.time() + expires_in,
    )


def get_credential(config: MarketingCloudConfig) -> UpstreamCredential:
    if config.cache_tokens:
        return _token_cache.get_or_refresh(config, retrieve_token)
    return retrieve_token(config)


def upsert_row(
    config: MarketingCloudConfig,
    *,
    collection_key: str,
    record_key: str,
    message: str,
    fields: RowFields = RowFields(),
    credential: UpstreamCredential | None = None,
    candidates: tuple[UpsertCandidate, ...] = UPSERT_CANDIDATES,
) -> UpsertResult:
    """Write one row, walking ``candidates`` until the first 2xx.

    Raises MarketingCloudAuthError when no token can be obtained; every other
    failure comes back as ``UpsertResult.failure``.
    """
    if credential is None:
        credential = get_credential(config)

    keys = {fields.record_key: record_key}
    values = {fields.record_key: record_key, fields.message: message}
    status_codes: list[int | None] = []
    last_error = "No upsert candidates configured"

    for candidate in candidates:
        path = candidate.path(collection_key)
        try:
            response = _post_json(
                url=f"{credential.rest_base_url}{path}",
                headers=_headers(credential.access_token),
                json_payload=candidate.build_payload(keys, values),
                timeout_seconds=config.write_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            status_codes.append(None)
            last_error = f"Marketing Cloud connectivity error on {candidate.name}: {exc}"
            incr_metric("marketing_cloud.upsert.candidate_failed", candidate=candidate.name, status_code="transport")
            log_event(
                "marketing_cloud_upsert_candidate_failed",
                level=logging.WARNING,
                candidate=candidate.name,
                collection_key=collection_key,
                error=str(exc),
            )
            continue

        if 200 <= response.status_code < 300:
            incr_metric("marketing_cloud.upsert.succeeded", candidate=candidate.name)
            log_event(
                "marketing_cloud_upsert_succeeded",
                candidate=candidate.name,
                collection_key=collection_key,
                status_code=response.status_code,
            )
            return UpsertResult.success(_response_body(response), candidate.name)

        status_codes.append(response.status_code)
        last_error = (
            f"Marketing Cloud {candidate.name} returned HTTP {response.status_code}: {response.text[:200]}"
        )
        incr_metric(
            "marketing_cloud.upsert.candidate_failed",
            candidate=candidate.name,
            status_code=response.status_code,
        )
        log_event(
            "marketing_cloud_upsert_candidate_failed",
            level=logging.WARNING,
            candidate=candidate.name,
            collection_key=collection_key,
            status_code=response.status_code,
            response_text=response.text[:200],
        )

    kind = classify_upsert_failure(status_codes)
    last_status = next((code for code in reversed(status_codes) if code is not None), None)
    incr_metric("marketing_cloud.upsert.failed", kind=kind)
    return UpsertResult.failure(
        MarketingCloudUpsertError(
            f"All upsert candidates failed ({kind}): {last_error}",
            kind=kind,
            status_code=last_status,
        )
    )


def insert_async_row(
    config: MarketingCloudConfig,
    *,
    collection_key: str,
    values: dict[str, Any],
    credential: UpstreamCredential | None = None,
) -> Any:
    """Single Family-B write without fallback, for collections this deployment owns."""
    if credential is None:
        credential = get_credential(config)
    try:
        response = _post_json(
            url=f"{credential.rest_base_url}{_EP_ASYNC_ROWS.format(collection_key=collection_key)}",
            headers=_headers(credential.access_token),
            json_payload=_async_rows_payload({}, values),
            timeout_seconds=config.write_timeout_seconds,
        )
    except httpx.HTTPError as exc:
        raise MarketingCloudUpsertError(
            f"Marketing Cloud connectivity error: {exc}", kind="upstream_error"
        ) from exc
    if response.status_code >= 400:
        raise MarketingCloudUpsertError(
            f"Marketing Cloud async rows returned HTTP {response.status_code}: {response.text[:200]}",
            kind=classify_upsert_failure([response.status_code]),
            status_code=response.status_code,
        )
    return _response_body(response)


MARKETING_CLOUD_IMPLEMENTED_ENDPOINT_REGISTRY: dict[str, list[dict[str, str]]] = {
    "retrieve_token": [{"method": "POST", "path": _EP_TOKEN}],
    "get_credential": [{"method": "POST", "path": _EP_TOKEN}],
    "upsert_row": [
        {"method": "POST", "path": candidate.path_template} for candidate in UPSERT_CANDIDATES
    ],
    "insert_async_row": [{"method": "POST", "path": _EP_ASYNC_ROWS}],
}
