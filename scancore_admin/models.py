from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --------- Installer ----------
class InstallationStep(CamelModel):
    id: str
    title: str
    description: str
    completed: bool = False
    error: str | None = None


class StepResult(CamelModel):
    success: bool
    error: str | None = None


class AdminConfig(CamelModel):
    email: str
    name: str
    password: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip()
        local, _, domain = value.partition("@")
        if not local or not domain:
            raise ValueError("a valid email address is required")
        return value

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be empty")
        return value

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("password must be at least 8 characters")
        return value


class EmailConfig(CamelModel):
    host: str
    port: int = Field(587, ge=1, le=65535)
    username: str | None = None
    password: str | None = None
    from_address: str
    from_name: str | None = None
    secure: bool = False

    @field_validator("host")
    @classmethod
    def _check_host(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("SMTP host must not be empty")
        return value

    @field_validator("from_address")
    @classmethod
    def _check_from(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value:
            raise ValueError("a valid sender address is required")
        return value


class AppConfig(CamelModel):
    name: str
    url: str | None = None


class InstallStepRequest(CamelModel):
    step_id: str
    config: dict[str, Any] = Field(default_factory=dict)


# --------- System ----------
class ContainerStatus(CamelModel):
    name: str
    status: Literal["running", "stopped", "error"]
    uptime: str | None = None
    ports: list[str] = Field(default_factory=list)


class DiskUsage(CamelModel):
    total: str = "Unknown"
    used: str = "Unknown"
    available: str = "Unknown"


class HealthCheck(CamelModel):
    service: str
    status: Literal["healthy", "unhealthy", "unknown"]
    message: str


class SystemStatus(CamelModel):
    containers: list[ContainerStatus] = Field(default_factory=list)
    disk_usage: DiskUsage = Field(default_factory=DiskUsage)
    system_health: list[HealthCheck] = Field(default_factory=list)


class ActionResult(CamelModel):
    success: bool
    message: str


__all__ = [
    "ActionResult",
    "AdminConfig",
    "AppConfig",
    "ContainerStatus",
    "DiskUsage",
    "EmailConfig",
    "HealthCheck",
    "InstallStepRequest",
    "InstallationStep",
    "StepResult",
    "SystemStatus",
]
