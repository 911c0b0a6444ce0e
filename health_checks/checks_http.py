from __future__ import annotations

import json
import re
import ssl
import time
from typing import Any

import httpx
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import InvalidHandshake, InvalidStatus, InvalidURI

from health_checks.common_check import (
    USER_AGENT,
    CheckResult,
    ProbeContext,
    ProbeError,
    Status,
    build_result,
    elapsed_ms,
    http_request,
    is_success,
    parse_json_optional,
)
from health_checks.registry import EndpointSpec


# Matched against status values only, never against component names.
_COMPONENT_UNHEALTHY_RE = re.compile(r"down|unhealthy|error|fail", re.IGNORECASE)
_TOP_LEVEL_UNHEALTHY_RE = re.compile(r"down|unhealthy|error", re.IGNORECASE)

GRAPHQL_PROBE_QUERY = "{ __typename }"


def _parse_json_required(resp: httpx.Response) -> Any:
    try:
        return json.loads(resp.text)
    except ValueError as exc:
        raise ProbeError("Invalid JSON response") from exc


async def check_http_get(spec: EndpointSpec, client: httpx.AsyncClient, ctx: ProbeContext) -> CheckResult:
    started = time.perf_counter()
    resp = await http_request(client, spec.url, timeout_seconds=spec.timeout_seconds)
    if is_success(resp.status_code):
        return build_result(spec, Status.UP, elapsed_ms(started), {"statusCode": resp.status_code})
    raise ProbeError(f"HTTP {resp.status_code}")


async def check_http_reachable(spec: EndpointSpec, client: httpx.AsyncClient, ctx: ProbeContext) -> CheckResult:
    """Anything below 500 is a live service; 401/403 only mean it wants credentials."""
    started = time.perf_counter()
    resp = await http_request(client, spec.url, timeout_seconds=spec.timeout_seconds)
    if resp.status_code < 500:
        return build_result(spec, Status.UP, elapsed_ms(started), {"statusCode": resp.status_code})
    raise ProbeError(f"HTTP {resp.status_code}")


async def check_http_json(spec: EndpointSpec, client: httpx.AsyncClient, ctx: ProbeContext) -> CheckResult:
    started = time.perf_counter()
    resp = await http_request(client, spec.url, timeout_seconds=spec.timeout_seconds)
    if not is_success(resp.status_code):
        raise ProbeError(f"HTTP {resp.status_code}")
    data = _parse_json_required(resp)
    details = {"statusCode": resp.status_code}
    if spec.expected_field and not (isinstance(data, dict) and spec.expected_field in data):
        return build_result(
            spec,
            Status.DEGRADED,
            elapsed_ms(started),
            details,
            f"Missing expected field: {spec.expected_field}",
        )
    return build_result(spec, Status.UP, elapsed_ms(started), details)


async def check_api_health(spec: EndpointSpec, client: httpx.AsyncClient, ctx: ProbeContext) -> CheckResult:
    started = time.perf_counter()
    resp = await http_request(client, spec.url, timeout_seconds=spec.timeout_seconds)
    if not is_success(resp.status_code):
        raise ProbeError(f"HTTP {resp.status_code}")

    details: dict[str, Any] = {"statusCode": resp.status_code}
    # The status code alone decides; a JSON body only adds facts.
    data = parse_json_optional(resp.text)
    if isinstance(data, dict):
        if data.get("status"):
            details["healthStatus"] = data["status"]
        if data.get("version"):
            details["version"] = data["version"]
    return build_result(spec, Status.UP, elapsed_ms(started), details)


async def check_graphql(spec: EndpointSpec, client: httpx.AsyncClient, ctx: ProbeContext) -> CheckResult:
    started = time.perf_counter()
    resp = await http_request(
        client,
        spec.url,
        method="POST",
        json_body={"query": GRAPHQL_PROBE_QUERY},
        headers={"Content-Type": "application/json"},
        timeout_seconds=spec.timeout_seconds,
    )
    if not is_success(resp.status_code):
        raise ProbeError(f"HTTP {resp.status_code}")

    details = {"statusCode": resp.status_code}
    data = parse_json_optional(resp.text)
    if isinstance(data, dict):
        if data.get("data") is not None:
            return build_result(spec, Status.UP, elapsed_ms(started), details)
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            message = str(first.get("message") or "GraphQL errors")
            return build_result(spec, Status.DEGRADED, elapsed_ms(started), details, message)
    return build_result(spec, Status.UP, elapsed_ms(started), details)


def _component_status(component: Any) -> Any:
    if isinstance(component, dict):
        return component.get("status") or component.get("state")
    return component


def find_unhealthy_component(components: Any) -> str | None:
    """Return the key of the first component whose status reads as unhealthy."""
    if isinstance(components, dict):
        items = list(components.items())
    elif isinstance(components, list):
        items = [(str(i), c) for i, c in enumerate(components)]
    else:
        return None
    for key, component in items:
        status = _component_status(component)
        if status and _COMPONENT_UNHEALTHY_RE.search(str(status)):
            return str(key)
    return None


async def check_deep_health(spec: EndpointSpec, client: httpx.AsyncClient, ctx: ProbeContext) -> CheckResult:
    started = time.perf_counter()
    health_url = spec.health_url or spec.url.rstrip("/") + "/health"
    resp = await http_request(client, health_url, timeout_seconds=spec.timeout_seconds)

    if resp.status_code == 404:
        # No health endpoint: plain reachability of the base URL.
        fallback = await http_request(client, spec.url, timeout_seconds=spec.timeout_seconds)
        if fallback.status_code < 500:
            return build_result(
                spec,
                Status.UP,
                elapsed_ms(started),
                {"statusCode": fallback.status_code, "fallback": True},
            )
        raise ProbeError(f"HTTP {fallback.status_code}")

    if not is_success(resp.status_code):
        raise ProbeError(f"HTTP {resp.status_code}")

    details: dict[str, Any] = {"statusCode": resp.status_code}
    data = parse_json_optional(resp.text)
    if not isinstance(data, dict):
        return build_result(spec, Status.UP, elapsed_ms(started), details)

    for key, detail_key in (("status", "healthStatus"), ("version", "version"), ("uptime", "uptime")):
        if data.get(key):
            details[detail_key] = data[key]

    components = data.get("components") or data.get("checks") or data.get("dependencies")
    if components:
        details["components"] = components
        bad = find_unhealthy_component(components)
        if bad is not None:
            return build_result(spec, Status.DEGRADED, elapsed_ms(started), details, f"{bad} is unhealthy")

    top_status = data.get("status")
    if top_status and _TOP_LEVEL_UNHEALTHY_RE.search(str(top_status)):
        return build_result(spec, Status.DEGRADED, elapsed_ms(started), details, f"Health reports: {top_status}")
    return build_result(spec, Status.UP, elapsed_ms(started), details)


def _insecure_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def _rejected_upgrade(exc: BaseException) -> InvalidStatus | None:
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        if isinstance(cur, InvalidStatus):
            return cur
        seen.add(id(cur))
        cur = cur.__cause__ or cur.__context__
    return None


async def check_websocket(spec: EndpointSpec, client: httpx.AsyncClient, ctx: ProbeContext) -> CheckResult:
    started = time.perf_counter()
    kwargs: dict[str, Any] = {
        "open_timeout": spec.timeout_seconds,
        "close_timeout": 1,
        "user_agent_header": USER_AGENT,
    }
    if spec.url.lower().startswith("wss://"):
        kwargs["ssl"] = _insecure_ssl_context()

    try:
        async with ws_connect(spec.url, **kwargs):
            pass
    except (InvalidHandshake, InvalidURI) as exc:
        # Server answered the upgrade with a plain HTTP response. A redirect the
        # client refuses to follow (http(s) Location, TLS downgrade) still carries it.
        rejected = _rejected_upgrade(exc)
        if rejected is None:
            raise
        status_code = int(rejected.response.status_code)
        if status_code < 400:
            return build_result(spec, Status.UP, elapsed_ms(started), {"statusCode": status_code})
        raise ProbeError(f"HTTP {status_code}") from exc
    return build_result(spec, Status.UP, elapsed_ms(started), {"upgraded": True})
