from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_OVERRIDES = {
    "REDIS_URL": "redis_url",
    "JWT_SECRET": "jwt_secret",
    "CHATRELAY_LISTEN": "listen",
    "CHATRELAY_DB": "db_path",
    "CHATRELAY_INSTANCE_ID": "instance_id",
}


class RelayConfig(BaseModel):
    """Server settings, read from YAML then patched from the environment."""

    instance_id: str = Field(default_factory=lambda: "inst-" + secrets.token_hex(4))
    listen: str = "0.0.0.0:3002"
    db_path: str = "chatrelay.db"
    jwt_secret: str = "fallback-secret"
    jwt_algorithm: str = "HS256"
    identity_claim: str = "userId"
    bus: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379"
    chat_channel: str = "chat"
    notification_channel: str = "notifications"
    log_level: str = "INFO"

    @field_validator("listen")
    @classmethod
    def _listen_host_port(cls, value: str) -> str:
        parse_listen(value)
        return value

    @property
    def host_port(self) -> Tuple[str, int]:
        return parse_listen(self.listen)


def parse_listen(value: str) -> Tuple[str, int]:
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"listen must look like host:port, got {value!r}")
    return host, int(port)


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> RelayConfig:
    data: Dict[str, Any] = {}
    if path is not None:
        data = yaml.safe_load(Path(path).read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at top level")
    env = os.environ if environ is None else environ
    for var, key in ENV_OVERRIDES.items():
        if env.get(var):
            data[key] = env[var]
    return RelayConfig(**data)


__all__ = ["RelayConfig", "load_config", "parse_listen"]
