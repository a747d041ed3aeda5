from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel


class StopResponse(BaseModel):
    status: Literal["success"] = "success"
    message: str = "Stop processed successfully"


class HealthEnvironment(BaseModel):
    jwt_secret_configured: bool
    marketing_cloud_configured: bool
    activity_log_enabled: bool


class HealthResponse(BaseModel):
    status: Literal["healthy"]
    timestamp: str
    environment: HealthEnvironment


class DataExtensionRef(BaseModel):
    name: str
    external_key: str


class ConnectionTestResponse(BaseModel):
    status: Literal["success", "error"]
    message: str
    rest_base_url: str | None = None
    data_extension: DataExtensionRef | None = None
    error: str | None = None


class MetricsSnapshotResponse(BaseModel):
    counters: dict[str, int]


class LifecycleContext(BaseModel):
    """Identifiers Journey Builder attaches to save/validate/publish calls."""
    activity_object_id: str | None = None
    definition_instance_id: str | None = None
    request_object_id: str | None = None

    @classmethod
    def from_body(cls, body: Any) -> "LifecycleContext":
        if not isinstance(body, dict):
            return cls()
        return cls(
            activity_object_id=_opt_str(body.get("activityObjectID")),
            definition_instance_id=_opt_str(body.get("definitionInstanceId")),
            request_object_id=_opt_str(body.get("requestObjectId")),
        )


def _opt_str(value: Any) -> str | None:
    return str(value) if value is not None else None


class UpdateTestResponse(BaseModel):
    status: Literal["success", "error"]
    message: str
    contact_key: str | None = None
    test_message: str | None = None
    candidate: str | None = None
    result: Any = None
    error: str | None = None
