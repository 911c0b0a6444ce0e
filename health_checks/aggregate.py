from __future__ import annotations

from typing import Any

import httpx

from health_checks.common_check import CheckResult, Status, utc_now_iso
from health_checks.dispatch import run_all_checks
from health_checks.graph import build_dependency_graph, get_impacted_services, graph_to_dict
from health_checks.history import (
    MAX_INCIDENTS,
    HistoryBacking,
    HistoryStore,
    append_and_persist,
    derive_incidents,
    derive_sparklines,
    derive_uptimes,
    record_snapshot,
)
from health_checks.registry import Registry


def build_health_payload(
    registry: Registry,
    results: list[CheckResult],
    history: HistoryStore | None = None,
) -> dict[str, Any]:
    graph = build_dependency_graph(registry.endpoints)

    items: list[dict[str, Any]] = []
    for r in results:
        impacted = get_impacted_services(r.id, graph)
        items.append({**r.to_dict(), "blastRadius": len(impacted), "impactedServices": impacted})

    payload: dict[str, Any] = {
        "timestamp": utc_now_iso(),
        "total": len(results),
        "up": sum(1 for r in results if r.status is Status.UP),
        "degraded": sum(1 for r in results if r.status is Status.DEGRADED),
        "down": sum(1 for r in results if r.status is Status.DOWN),
        "results": items,
        "groups": [g.model_dump() for g in registry.groups],
        "dependencyGraph": graph_to_dict(graph),
        "sparklines": {},
        "uptimes": {},
        "incidents": [],
    }
    if history is not None:
        payload["sparklines"] = derive_sparklines(history)
        payload["uptimes"] = derive_uptimes(history)
        payload["incidents"] = derive_incidents(history, limit=MAX_INCIDENTS)
    return payload


async def collect_health(
    registry: Registry,
    history: HistoryStore | None = None,
    history_backing: HistoryBacking | None = None,
    *,
    category: str | None = None,
    environment: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """
    One full cycle: check, record into history, aggregate.

    The store is loaded once by the caller (see load_history) and mutated here;
    recording and saving happen without an await in between, so concurrent
    cycles never interleave within one snapshot.
    """
    results = await run_all_checks(registry, category=category, environment=environment, client=client)
    if history is not None:
        if history_backing is not None:
            append_and_persist(history, results, history_backing)
        else:
            record_snapshot(history, results)
    return build_health_payload(registry, results, history)
