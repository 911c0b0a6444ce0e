from __future__ import annotations

import json
import math
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit, urlunsplit

import httpx

if TYPE_CHECKING:
    from health_checks.registry import EndpointSpec


USER_AGENT = "endpoint-health/1.0"

_FRACTION_RE = re.compile(r"\.(\d+)")


class Status(str, Enum):
    UP = "UP"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"

    @property
    def code(self) -> int:
        return STATUS_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> "Status | None":
        for status, value in STATUS_CODES.items():
            if value == code:
                return status
        return None


# Compact encoding used in history snapshots.
STATUS_CODES: dict[Status, int] = {Status.DOWN: 0, Status.UP: 1, Status.DEGRADED: 2}


class ProbeError(RuntimeError):
    """Raised by a probe when the endpoint answered, but unusably (e.g. HTTP 503)."""


@dataclass(frozen=True)
class ProbeContext:
    """Registry-wide settings a probe may need beyond its own endpoint spec."""

    halt_threshold_seconds: float = 60.0
    default_public_rpc: str | None = None


@dataclass(frozen=True)
class CheckResult:
    id: str
    name: str
    category: str
    environment: str
    status: Status
    response_time_ms: int
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    url: str = ""
    depends_on: list[str] = field(default_factory=list)
    impacts: list[str] = field(default_factory=list)
    impact_description: str | None = None
    description: str | None = None
    owner: str | None = None
    docs_url: str | None = None
    repo_url: str | None = None
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "category": self.category,
            "environment": self.environment,
            "status": self.status.value,
            "responseTimeMs": self.response_time_ms,
            "timestamp": self.timestamp,
            "details": dict(self.details),
            "error": self.error,
            "dependsOn": list(self.depends_on),
            "impacts": list(self.impacts),
            "impactDescription": self.impact_description,
            "description": self.description,
            "owner": self.owner,
            "docsUrl": self.docs_url,
            "repoUrl": self.repo_url,
            "tags": list(self.tags),
        }


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def build_result(
    spec: "EndpointSpec",
    status: Status,
    response_time_ms: float,
    details: dict[str, Any] | None = None,
    error: str | None = None,
) -> CheckResult:
    if status is not Status.UP and not error:
        error = status.value.lower()
    return CheckResult(
        id=spec.id,
        name=spec.name or spec.id,
        category=spec.category,
        environment=spec.environment or "prod",
        status=status,
        response_time_ms=max(0, int(round(float(response_time_ms or 0)))),
        timestamp=utc_now_iso(),
        details=dict(details or {}),
        error=error if status is not Status.UP else None,
        url=_safe_url(spec.url),
        depends_on=list(spec.depends_on),
        impacts=list(spec.impacts),
        impact_description=spec.impact_description,
        description=spec.description,
        owner=spec.owner,
        docs_url=spec.docs_url,
        repo_url=spec.repo_url,
        tags=list(spec.tags),
    )


def elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


def _safe_url(url: str) -> str:
    """
    Drop querystrings (API keys sometimes live there) before a URL lands in a result.
    """
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return s[:500]


def parse_json_optional(text: str | bytes | None) -> Any | None:
    """
    Best-effort JSON decode: None when the body is empty or not JSON.
    Callers treat None as "no optional facts available", never as an error.
    """
    if not text:
        return None
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def is_success(status_code: int) -> bool:
    return 200 <= int(status_code) < 400


async def http_request(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout_seconds: float,
    method: str = "GET",
    json_body: Any = None,
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    merged = {"User-Agent": USER_AGENT}
    if headers:
        merged.update(headers)
    return await client.request(
        method,
        url,
        json=json_body,
        headers=merged,
        timeout=float(timeout_seconds),
    )


async def json_rpc(
    client: httpx.AsyncClient,
    url: str,
    method: str,
    params: list[Any] | None = None,
    *,
    timeout_seconds: float,
) -> Any:
    resp = await http_request(
        client,
        url,
        method="POST",
        json_body={"jsonrpc": "2.0", "id": 1, "method": method, "params": list(params or [])},
        headers={"Content-Type": "application/json"},
        timeout_seconds=timeout_seconds,
    )
    try:
        return json.loads(resp.text)
    except ValueError as exc:
        raise ProbeError(f"Invalid JSON-RPC response (HTTP {resp.status_code})") from exc


def parse_block_time(value: str) -> datetime:
    """
    Parse an RFC 3339 block timestamp. Tendermint emits nanosecond precision
    ("2024-05-01T10:00:00.123456789Z"); datetime only holds microseconds.
    """
    s = str(value or "").strip()
    if not s:
        raise ValueError("empty block time")
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    s = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), s, count=1)
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def block_age_seconds(latest_block_time: str, *, now: datetime | None = None) -> float:
    current = now or datetime.now(timezone.utc)
    return (current - parse_block_time(latest_block_time)).total_seconds()


def round_half_up(value: float) -> int:
    return int(math.floor(float(value) + 0.5))
