"""Configuration for the session orchestrator."""

from __future__ import annotations

import ipaddress
import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_IMAGE = "ghcr.io/sst/opencode:latest"
DEFAULT_AGENT_PORT = 4096
ENV_PREFIX = "BURROW_"


class SessionsConfig(BaseModel):
    """Settings consumed when the orchestrator is constructed."""

    # Container
    image: str = Field(default=DEFAULT_IMAGE, min_length=1)
    agent_port: int = Field(default=DEFAULT_AGENT_PORT, ge=1, le=65535)
    host_address: str = Field(default="127.0.0.1", description="Host interface the agent port binds to")
    memory_limit: str = "2g"
    cpu_limit: float = Field(default=2.0, gt=0)
    container_user: str = "1000:1000"
    container_labels: dict[str, str] = Field(default_factory=dict)
    instance_id: str = Field(
        default="default",
        pattern=r"^[A-Za-z0-9_.-]+$",
        description="Names this orchestrator on a shared engine; only its own containers are swept",
    )

    # Admission
    max_concurrent_tasks: int = Field(default=1, ge=1)

    # Lifecycle
    task_timeout_s: float = Field(default=1800.0, gt=0)
    health_check_retries: int = Field(default=30, ge=1)
    health_check_interval_s: float = Field(default=1.0, ge=0)
    request_timeout_s: float = Field(default=30.0, gt=0)
    abort_timeout_s: float = Field(default=5.0, gt=0)

    @field_validator("host_address")
    @classmethod
    def _require_loopback(cls, value: str) -> str:
        try:
            address = ipaddress.ip_address(value)
        except ValueError as exc:
            raise ValueError("host_address must be an IP address") from exc
        if not address.is_loopback:
            raise ValueError("host_address must be a loopback address")
        return value

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        prefix: str = ENV_PREFIX,
        **overrides: Any,
    ) -> SessionsConfig:
        """Build a config from ``BURROW_*`` variables; explicit overrides win."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(f"{prefix}{name.upper()}")
            if raw is None:
                continue
            if name == "container_labels":
                values[name] = _parse_labels(raw)
            else:
                values[name] = raw
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(values)


def _parse_labels(raw: str) -> dict[str, str]:
    labels: dict[str, str] = {}
    for item in raw.split(","):
        key, sep, value = item.strip().partition("=")
        if key and sep:
            labels[key] = value
    return labels


__all__ = ["DEFAULT_AGENT_PORT", "DEFAULT_IMAGE", "ENV_PREFIX", "SessionsConfig"]
