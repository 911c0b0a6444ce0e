from __future__ import annotations

import asyncio
import errno
import time
from enum import Enum
from typing import Awaitable, Callable, Iterable

import httpx
import structlog

from health_checks.checks_chain import check_cosmos_peer, check_cosmos_rest, check_cosmos_rpc, check_evm_rpc
from health_checks.checks_http import (
    check_api_health,
    check_deep_health,
    check_graphql,
    check_http_get,
    check_http_json,
    check_http_reachable,
    check_websocket,
)
from health_checks.common_check import CheckResult, ProbeContext, Status, build_result, elapsed_ms
from health_checks.registry import EndpointSpec, Registry


logger = structlog.get_logger(__name__)

Probe = Callable[[EndpointSpec, httpx.AsyncClient, ProbeContext], Awaitable[CheckResult]]

FIREWALL_CATEGORY = "validators"
FIREWALLED_MESSAGE = "Unreachable (likely firewalled)"

_FIREWALL_ERRNOS = {errno.ECONNREFUSED, errno.ECONNRESET, errno.EHOSTUNREACH}
_FIREWALL_MESSAGES = ("connection refused", "connection reset", "host is unreachable", "no route to host")


class CheckType(str, Enum):
    EVM_RPC = "evm-rpc"
    COSMOS_RPC = "cosmos-rpc"
    COSMOS_REST = "cosmos-rest"
    HTTP_JSON = "http-json"
    HTTP_GET = "http-get"
    HTTP_REACHABLE = "http-reachable"
    WEBSOCKET = "websocket"
    API_HEALTH = "api-health"
    GRAPHQL = "graphql"
    DEEP_HEALTH = "deep-health"
    COSMOS_PEER_CHECK = "cosmos-peer-check"

    @classmethod
    def parse(cls, value: str) -> "CheckType | None":
        try:
            return cls(str(value or "").strip())
        except ValueError:
            return None


PROBES: dict[CheckType, Probe] = {
    CheckType.EVM_RPC: check_evm_rpc,
    CheckType.COSMOS_RPC: check_cosmos_rpc,
    CheckType.COSMOS_REST: check_cosmos_rest,
    CheckType.HTTP_JSON: check_http_json,
    CheckType.HTTP_GET: check_http_get,
    CheckType.HTTP_REACHABLE: check_http_reachable,
    CheckType.WEBSOCKET: check_websocket,
    CheckType.API_HEALTH: check_api_health,
    CheckType.GRAPHQL: check_graphql,
    CheckType.DEEP_HEALTH: check_deep_health,
    CheckType.COSMOS_PEER_CHECK: check_cosmos_peer,
}


def _exception_chain(exc: BaseException) -> Iterable[BaseException]:
    seen: set[int] = set()
    stack = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur
        # anyio reports failed connection attempts as an ExceptionGroup cause.
        stack.extend(getattr(cur, "exceptions", None) or ())
        if cur.__cause__ is not None:
            stack.append(cur.__cause__)
        if cur.__context__ is not None:
            stack.append(cur.__context__)


def is_firewall_error(exc: BaseException) -> bool:
    """Connection refused/reset or host unreachable, anywhere in the exception chain."""
    for cur in _exception_chain(exc):
        if isinstance(cur, (ConnectionRefusedError, ConnectionResetError)):
            return True
        if isinstance(cur, OSError) and cur.errno in _FIREWALL_ERRNOS:
            return True
        msg = str(cur).lower()
        if any(m in msg for m in _FIREWALL_MESSAGES):
            return True
    return False


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return "timeout"
    return str(exc) or type(exc).__name__


def classify_failure(spec: EndpointSpec, exc: BaseException, response_time_ms: float = 0) -> CheckResult:
    if spec.category == FIREWALL_CATEGORY and is_firewall_error(exc):
        return build_result(spec, Status.DEGRADED, response_time_ms, {}, FIREWALLED_MESSAGE)
    return build_result(spec, Status.DOWN, response_time_ms, {}, _error_message(exc))


async def run_check(
    spec: EndpointSpec,
    client: httpx.AsyncClient,
    ctx: ProbeContext,
    *,
    probes: dict[CheckType, Probe] | None = None,
) -> CheckResult:
    table = PROBES if probes is None else probes
    check_type = CheckType.parse(spec.check_type)
    probe = table.get(check_type) if check_type is not None else None
    if probe is None:
        return build_result(spec, Status.DOWN, 0, {}, f"Unknown check type: {spec.check_type}")

    started = time.perf_counter()
    try:
        # The endpoint timeout bounds the whole probe, not just each request.
        return await asyncio.wait_for(probe(spec, client, ctx), timeout=spec.timeout_seconds)
    except Exception as exc:
        result = classify_failure(spec, exc)
        logger.warning(
            "Health check failed",
            endpoint=spec.id,
            check_type=spec.check_type,
            status=result.status.value,
            error=result.error,
            elapsed_ms=round(elapsed_ms(started), 1),
        )
        return result


def build_http_client() -> httpx.AsyncClient:
    # Status probes judge availability, not certificate hygiene.
    return httpx.AsyncClient(verify=False, follow_redirects=False)


async def run_all_checks(
    registry: Registry,
    *,
    category: str | None = None,
    environment: str | None = None,
    client: httpx.AsyncClient | None = None,
    probes: dict[CheckType, Probe] | None = None,
) -> list[CheckResult]:
    """
    One check cycle: every enabled endpoint (optionally narrowed by category or
    environment) is probed concurrently; exactly one result per endpoint,
    in registry order.
    """
    endpoints = registry.get_endpoints(enabled_only=True, category=category, environment=environment)
    ctx = ProbeContext(
        halt_threshold_seconds=float(registry.chain_halt_threshold_seconds),
        default_public_rpc=registry.default_public_rpc,
    )
    started = time.perf_counter()
    logger.info("Check cycle started", endpoints=len(endpoints), category=category, environment=environment)

    owns_client = client is None
    http_client = build_http_client() if owns_client else client
    try:
        settled = await asyncio.gather(
            *(run_check(ep, http_client, ctx, probes=probes) for ep in endpoints),
            return_exceptions=True,
        )
    finally:
        if owns_client:
            await http_client.aclose()

    results: list[CheckResult] = []
    for ep, outcome in zip(endpoints, settled):
        if isinstance(outcome, CheckResult):
            results.append(outcome)
        elif isinstance(outcome, Exception):
            results.append(classify_failure(ep, outcome))
        else:
            # Cancellation and other BaseExceptions are not ours to swallow.
            raise outcome

    counts = {s.value: sum(1 for r in results if r.status is s) for s in Status}
    logger.info("Check cycle finished", elapsed_ms=round(elapsed_ms(started), 1), **counts)
    return results
