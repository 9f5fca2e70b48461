"""
allocator/shared/config.py
──────────────────────────
Controller configuration.

Resolution order (later wins):
  1. Field defaults on ControllerSettings
  2. YAML file: explicit path, else $ALLOCATOR_CONFIG_FILE
  3. Environment: ALLOCATOR_<FIELD_NAME>, e.g. ALLOCATOR_IS_SOLVER_NODE=true

Values are validated by pydantic, so "30" from the environment becomes 30 and
"yes" becomes True. A bad value raises pydantic.ValidationError at startup.

Lease TTL and epoch duration are independent. With
lease_ttl_s < epoch_duration_s the published plan expires before the next
publish and watchers see NotFound for the remainder of the epoch.

registration_interval_s defaults to a third of registration_ttl_s.
"""

from __future__ import annotations

import logging
import os
import socket
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "ALLOCATOR_"
CONFIG_FILE_ENV = "ALLOCATOR_CONFIG_FILE"


class ControllerSettings(BaseModel):
    """All knobs of one controller process."""

    # Role: fixed for the lifetime of the process. No election.
    is_solver_node: bool = False
    node_id: str = Field(default_factory=socket.gethostname)
    advertised_ip: Optional[str] = None

    # Epoch loop
    epoch_duration_s: int = Field(30, ge=1)

    # Coordination store
    store_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379/0"
    allocation_key: str = "allocation"
    lease_ttl_s: int = Field(60, ge=1)
    store_timeout_s: float = Field(5.0, gt=0.0)
    watch_retry_backoff_s: float = Field(1.0, ge=0.0)
    watch_max_backoff_s: float = Field(30.0, ge=0.0)

    # Registries (store-backed)
    node_registry_prefix: str = "registry/nodes/"
    registration_ttl_s: int = Field(90, ge=1)
    registration_interval_s: Optional[float] = Field(None, gt=0.0)
    function_registry_prefix: str = "functions/"

    # Solver binding
    solver_backend: Literal["module", "subprocess"] = "module"
    solver_entrypoint: Optional[str] = None
    solver_command: List[str] = Field(default_factory=list)
    solver_timeout_s: Optional[float] = Field(300.0, gt=0.0)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _heartbeat_inside_ttl(self) -> "ControllerSettings":
        if self.registration_interval_s is not None and self.registration_interval_s >= self.registration_ttl_s:
            raise ValueError("registration_interval_s must be shorter than registration_ttl_s")
        return self


def load_settings(
    config_file: Optional[str] = None,
    environ: Optional[Dict[str, str]] = None,
) -> ControllerSettings:
    """
    Build ControllerSettings from defaults, an optional YAML file and the
    environment.

    Args:
        config_file: YAML path. Falls back to $ALLOCATOR_CONFIG_FILE. A path
                     that is given but missing raises FileNotFoundError.
        environ:     Environment mapping (defaults to os.environ). Injected by tests.
    """
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    path = config_file or environ.get(CONFIG_FILE_ENV)
    if path:
        values.update(_load_yaml(Path(path)))

    values.update(_load_env(environ))
    settings = ControllerSettings(**values)
    logger.debug("Loaded settings: %s", settings)
    return settings


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"config file {path} not found")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a mapping, got {type(data).__name__}")

    known = set(ControllerSettings.model_fields)
    unknown = set(data) - known
    if unknown:
        logger.warning("Ignoring unknown config keys in %s: %s", path, sorted(unknown))
    logger.info("Loaded configuration file %s", path)
    return {k: v for k, v in data.items() if k in known}


def _load_env(environ: Dict[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in ControllerSettings.model_fields:
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        if name == "solver_command":
            # whitespace-separated argv; use the YAML file for arguments with spaces
            values[name] = raw.split()
        elif name == "solver_timeout_s" and raw.strip().lower() in ("", "none"):
            values[name] = None
        else:
            values[name] = raw
    return values
