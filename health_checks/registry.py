"""Endpoint registry: the declarative list of monitored endpoints and app groups."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


logger = structlog.get_logger(__name__)

DEFAULT_REGISTRY_PATH = Path(__file__).with_name("config.yaml")
DEFAULT_CATEGORIES = ["blockchain", "validators", "apis", "frontends", "external"]
DEFAULT_ENVIRONMENTS = ["prod", "dev", "staging", "release"]
CHAIN_HALT_THRESHOLD_SECONDS = 60
DEFAULT_TIMEOUT_MS = 10000
EXTERNAL_GROUP_ID = "external"


class EndpointSpec(BaseModel):
    """One monitored endpoint, as declared in the registry."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    name: str = ""
    category: str = ""
    environment: str = "prod"
    url: str = Field(..., min_length=1)
    check_type: str = Field(..., alias="checkType", min_length=1)
    timeout: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0, description="Timeout in milliseconds")
    enabled: bool = True

    # Check-specific parameters.
    expected_chain_id: Optional[str] = Field(default=None, alias="expectedChainId")
    expected_field: Optional[str] = Field(default=None, alias="expectedField")
    peer_ip: Optional[str] = Field(default=None, alias="peerIp")
    public_rpc: Optional[str] = Field(default=None, alias="publicRpc")
    health_url: Optional[str] = Field(default=None, alias="healthUrl")

    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    impacts: list[str] = Field(default_factory=list)

    # Pass-through metadata for the dashboard.
    impact_description: Optional[str] = Field(default=None, alias="impactDescription")
    description: Optional[str] = None
    owner: Optional[str] = None
    docs_url: Optional[str] = Field(default=None, alias="docsUrl")
    repo_url: Optional[str] = Field(default=None, alias="repoUrl")
    tags: list[str] = Field(default_factory=list)

    @field_validator("depends_on", "impacts", "tags", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("expected_chain_id", mode="before")
    @classmethod
    def _chain_id_to_str(cls, value: Any) -> Any:
        # YAML reads an unquoted 0x6669 as an int.
        if isinstance(value, int) and not isinstance(value, bool):
            return hex(value)
        return value

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class AppGroup(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1)
    name: str = ""
    icon: Optional[str] = None
    endpoints: list[str] = Field(default_factory=list)


class Registry(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    chain_halt_threshold_seconds: int = Field(default=CHAIN_HALT_THRESHOLD_SECONDS, gt=0)
    default_public_rpc: Optional[str] = None
    categories: list[str] = Field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    environments: list[str] = Field(default_factory=lambda: list(DEFAULT_ENVIRONMENTS))
    groups: list[AppGroup] = Field(default_factory=list)
    endpoints: list[EndpointSpec] = Field(default_factory=list)

    @field_validator("endpoints")
    @classmethod
    def _unique_ids(cls, value: list[EndpointSpec]) -> list[EndpointSpec]:
        seen: set[str] = set()
        for ep in value:
            if ep.id in seen:
                raise ValueError(f"duplicate endpoint id: {ep.id}")
            seen.add(ep.id)
        return value

    def get_endpoints(
        self,
        *,
        enabled_only: bool = True,
        category: str | None = None,
        environment: str | None = None,
    ) -> list[EndpointSpec]:
        eps = list(self.endpoints)
        if enabled_only:
            eps = [e for e in eps if e.enabled]
        if category:
            eps = [e for e in eps if e.category == category]
        if environment:
            eps = [e for e in eps if e.environment == environment]
        return eps

    def get_endpoint(self, endpoint_id: str) -> EndpointSpec | None:
        for ep in self.endpoints:
            if ep.id == endpoint_id:
                return ep
        return None


def _fill_external_group(groups: list[dict[str, Any]], endpoints: list[dict[str, Any]]) -> None:
    """Every external endpoint no other group claims lands in the 'external' group."""
    external = next((g for g in groups if g.get("id") == EXTERNAL_GROUP_ID), None)
    if external is None:
        return
    claimed: set[str] = set()
    for g in groups:
        if g is external:
            continue
        claimed.update(str(x) for x in (g.get("endpoints") or []))
    members = [str(x) for x in (external.get("endpoints") or [])]
    for ep in endpoints:
        ep_id = str(ep.get("id") or "")
        if ep.get("category") == "external" and ep_id not in claimed and ep_id not in members:
            members.append(ep_id)
    external["endpoints"] = members


def parse_registry(data: Any) -> Registry:
    if not isinstance(data, dict):
        raise ValueError("Registry YAML must be a mapping")

    endpoints = data.get("endpoints") or []
    if not isinstance(endpoints, list):
        raise ValueError("Registry 'endpoints' must be a list")
    groups = [dict(g) for g in (data.get("groups") or []) if isinstance(g, dict)]
    _fill_external_group(groups, [e for e in endpoints if isinstance(e, dict)])

    try:
        return Registry.model_validate({**data, "groups": groups, "endpoints": endpoints})
    except ValidationError as exc:
        raise ValueError(f"Invalid endpoint registry: {exc}") from exc


def load_registry(path: str | Path | None = None) -> Registry:
    registry_path = Path(path) if path else DEFAULT_REGISTRY_PATH
    with open(registry_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    registry = parse_registry(data)
    logger.info("Loaded endpoint registry", path=str(registry_path), endpoints=len(registry.endpoints))
    return registry
