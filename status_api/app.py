from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from health_checks.aggregate import collect_health
from health_checks.graph import build_dependency_graph, get_cascade_levels, get_impacted_services
from health_checks.history import HistoryBacking, HistoryStore, JsonFileBacking, load_history
from health_checks.registry import Registry, load_registry
from status_api.settings import StatusSettings


logger = structlog.get_logger(__name__)


def create_app(
    settings: StatusSettings | None = None,
    *,
    registry: Registry | None = None,
    history_backing: HistoryBacking | None = None,
) -> FastAPI:
    app = FastAPI(title="Endpoint Health Status", version="0.1.0")
    app.state.settings = settings or StatusSettings()
    app.state.registry = registry if registry is not None else load_registry(app.state.settings.registry_path)

    backing = history_backing
    if backing is None and app.state.settings.history_enabled:
        backing = JsonFileBacking(app.state.settings.history_path)
    app.state.history_backing = backing
    app.state.history = None

    def _history() -> HistoryStore | None:
        # Read once per process; later cycles append to the in-memory store.
        if app.state.history_backing is None:
            return None
        if app.state.history is None:
            app.state.history = load_history(
                app.state.history_backing, capacity=app.state.settings.history_capacity
            )
        return app.state.history

    def _response_headers() -> dict[str, str]:
        s: StatusSettings = app.state.settings
        return {
            "Access-Control-Allow-Origin": s.cors_allow_origin,
            "Cache-Control": s.cache_control,
        }

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/api/health")
    async def api_health(req: Request, category: str | None = None, environment: str | None = None) -> JSONResponse:
        try:
            payload = await collect_health(
                app.state.registry,
                _history(),
                app.state.history_backing,
                category=category or None,
                environment=environment or None,
            )
        except Exception as e:
            logger.exception("Health cycle failed", path=str(req.url.path))
            return JSONResponse({"error": str(e) or type(e).__name__}, status_code=500, headers=_response_headers())
        return JSONResponse(payload, headers=_response_headers())

    @app.get("/api/endpoints")
    async def api_endpoints() -> dict[str, Any]:
        reg: Registry = app.state.registry
        return {
            "chainHaltThresholdSeconds": reg.chain_halt_threshold_seconds,
            "categories": list(reg.categories),
            "environments": list(reg.environments),
            "groups": [g.model_dump() for g in reg.groups],
            "endpoints": [ep.to_dict() for ep in reg.endpoints],
        }

    @app.get("/api/dependencies/{endpoint_id}")
    async def api_dependencies(endpoint_id: str) -> dict[str, Any]:
        graph = build_dependency_graph(app.state.registry.endpoints)
        if endpoint_id not in graph:
            raise HTTPException(status_code=404, detail="unknown_endpoint")
        impacted = get_impacted_services(endpoint_id, graph)
        return {
            "id": endpoint_id,
            "dependsOn": list(graph[endpoint_id].depends_on),
            "requiredBy": list(graph[endpoint_id].required_by),
            "blastRadius": len(impacted),
            "impactedServices": impacted,
            "cascade": [level.to_dict() for level in get_cascade_levels(endpoint_id, graph)],
        }

    return app
