from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Literal

from journey_activity.auth.tokens import extract_activity_token, verify_activity_token


PayloadSource = Literal["in_arguments", "token", "default"]
ExtractionRule = Callable[[Any], "str | None"]

_EXECUTE_IN_ARGUMENTS_PATH = ("request", "currentActivity", "arguments", "execute", "inArguments")


@dataclass(frozen=True)
class InArgumentFields:
    """Inbound argument names, as declared in the activity descriptor."""
    record_key_aliases: tuple[str, ...] = ("contactKey", "subscriberKey")
    message: str = "customMessage"
    correlation_id: str = "uuid"


@dataclass(frozen=True)
class NormalizationDefaults:
    record_key: str = "UNKNOWN_CONTACT"
    message: str = "Contact processed by custom journey activity"
    correlation_prefix: str = "unknown"

    def correlation_id(self, now: float | None = None) -> str:
        millis = int((time.time() if now is None else now) * 1000)
        return f"{self.correlation_prefix}-{millis}"


@dataclass(frozen=True)
class NormalizedPayload:
    record_key: str
    message: str
    correlation_id: str
    source: PayloadSource = "default"
    defaulted: tuple[str, ...] = ()
    token_error: str | None = None


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _dig(obj: Any, *path: str | int) -> Any:
    current = obj
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
    return current


def _first_text(obj: Any, names: tuple[str, ...]) -> str | None:
    if not isinstance(obj, dict):
        return None
    for name in names:
        value = _text(obj.get(name))
        if value is not None:
            return value
    return None


def record_key_rules(fields: InArgumentFields) -> tuple[ExtractionRule, ...]:
    """Claim locations for the record key, highest priority first."""
    aliases = fields.record_key_aliases
    return (
        lambda claims: _first_text(_dig(claims, "request"), aliases),
        lambda claims: _first_text(_dig(claims, *_EXECUTE_IN_ARGUMENTS_PATH, 0), aliases),
        lambda claims: _first_text(_dig(claims, "inArguments", 0), aliases),
        lambda claims: _first_text(claims, aliases),
    )


def first_match(rules: tuple[ExtractionRule, ...], source: Any) -> str | None:
    for rule in rules:
        value = rule(source)
        if value is not None:
            return value
    return None


def token_arguments(claims: dict[str, Any]) -> list[dict[str, Any]]:
    for path in (_EXECUTE_IN_ARGUMENTS_PATH, ("inArguments",)):
        arguments = _dig(claims, *path)
        if isinstance(arguments, list) and arguments:
            return [item for item in arguments if isinstance(item, dict)]
    return []


def _scan_arguments(arguments: list[dict[str, Any]], name: str) -> str | None:
    for item in arguments:
        value = _text(item.get(name))
        if value is not None:
            return value
    return None


def _build_payload(
    *,
    record_key: str | None,
    message: str | None,
    correlation_id: str | None,
    source: PayloadSource,
    defaults: NormalizationDefaults,
    now: float | None,
    token_error: str | None = None,
) -> NormalizedPayload:
    defaulted: list[str] = []
    if record_key is None:
        record_key = defaults.record_key
        defaulted.append("record_key")
    if message is None:
        message = defaults.message
        defaulted.append("message")
    if correlation_id is None:
        correlation_id = defaults.correlation_id(now)
        defaulted.append("correlation_id")
    return NormalizedPayload(
        record_key=record_key,
        message=message,
        correlation_id=correlation_id,
        source=source,
        defaulted=tuple(defaulted),
        token_error=token_error,
    )


def normalize_execute_payload(
    body: Any,
    *,
    secret: str | None,
    algorithm: str = "HS256",
    fields: InArgumentFields = InArgumentFields(),
    defaults: NormalizationDefaults = NormalizationDefaults(),
    now: float | None = None,
) -> NormalizedPayload:
    """Reduce an execute body to (record key, message, correlation id).

    Direct ``inArguments`` win over the signed token. Anything missing falls back
    to ``defaults``; this function never raises.
    """
    in_arguments = body.get("inArguments") if isinstance(body, dict) else None
    if isinstance(in_arguments, list) and in_arguments:
        first = in_arguments[0] if isinstance(in_arguments[0], dict) else {}
        return _build_payload(
            record_key=_first_text(first, fields.record_key_aliases),
            message=_text(first.get(fields.message)),
            correlation_id=_text(first.get(fields.correlation_id)),
            source="in_arguments",
            defaults=defaults,
            now=now,
        )

    verification = verify_activity_token(extract_activity_token(body), secret, algorithm)
    if verification.valid and verification.claims is not None:
        claims = verification.claims
        arguments = token_arguments(claims)
        return _build_payload(
            record_key=first_match(record_key_rules(fields), claims),
            message=_scan_arguments(arguments, fields.message),
            correlation_id=_scan_arguments(arguments, fields.correlation_id),
            source="token",
            defaults=defaults,
            now=now,
        )

    return _build_payload(
        record_key=None,
        message=None,
        correlation_id=None,
        source="default",
        defaults=defaults,
        now=now,
        token_error=verification.reason,
    )
