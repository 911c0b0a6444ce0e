from __future__ import annotations

import json
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol

import structlog

from health_checks.common_check import CheckResult, Status, round_half_up


logger = structlog.get_logger(__name__)

# Snapshot encoding for the persisted history file (compact, stable schema):
# {"t": <capture time, unix epoch ms>, "ep": {<endpoint id>: {"s": <status code>, "ms": <response ms>}}}
#
# - status code: 0=DOWN, 1=UP, 2=DEGRADED
# - only endpoints checked in that cycle appear in "ep"
Snapshot = dict[str, Any]

DEFAULT_CAPACITY = 120  # 1 hour at a 30s refresh
DEFAULT_HISTORY_PATH = Path(tempfile.gettempdir()) / "endpoint-health-history.json"
DOWN_SENTINEL = -1
MAX_INCIDENTS = 50

_STATUS_NAMES = {0: "DOWN", 1: "UP", 2: "DEGRADED"}


class HistoryBacking(Protocol):
    def read(self) -> Any: ...

    def write(self, payload: dict[str, Any]) -> None: ...


class JsonFileBacking:
    def __init__(self, path: str | Path = DEFAULT_HISTORY_PATH) -> None:
        self.path = Path(path)

    def read(self) -> Any:
        return json.loads(self.path.read_text(encoding="utf-8"))

    def write(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False, separators=(",", ":")), encoding="utf-8")
        tmp.replace(self.path)


class MemoryBacking:
    """Keeps the serialized form in memory, so reads see exactly what a file would."""

    def __init__(self, raw: str | None = None) -> None:
        self.raw = raw

    def read(self) -> Any:
        if self.raw is None:
            raise FileNotFoundError("no history stored")
        return json.loads(self.raw)

    def write(self, payload: dict[str, Any]) -> None:
        self.raw = json.dumps(payload, separators=(",", ":"))


@dataclass
class HistoryStore:
    snapshots: list[Snapshot] = field(default_factory=list)
    capacity: int = DEFAULT_CAPACITY

    def to_dict(self) -> dict[str, Any]:
        return {"snapshots": self.snapshots}

    @classmethod
    def from_raw(cls, raw: Any, *, capacity: int = DEFAULT_CAPACITY) -> "HistoryStore":
        snapshots = coerce_snapshots(raw)
        capacity = max(1, int(capacity))
        if len(snapshots) > capacity:
            snapshots = snapshots[-capacity:]
        return cls(snapshots=snapshots, capacity=capacity)


def _coerce_entry(value: Any) -> dict[str, int] | None:
    if not isinstance(value, dict):
        return None
    try:
        code = int(value.get("s"))
    except (TypeError, ValueError):
        return None
    if code not in _STATUS_NAMES:
        return None
    try:
        ms = max(0, int(value.get("ms") or 0))
    except (TypeError, ValueError):
        ms = 0
    return {"s": code, "ms": ms}


def coerce_snapshots(raw: Any) -> list[Snapshot]:
    """
    Best-effort decode of a persisted store.
    Anything that is not {"snapshots": [...]} decodes as empty; malformed
    snapshots or entries inside a valid store are skipped.
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("snapshots"), list):
        return []

    out: list[Snapshot] = []
    for item in raw["snapshots"]:
        if not isinstance(item, dict) or not isinstance(item.get("ep"), dict):
            continue
        try:
            t = int(item.get("t"))
        except (TypeError, ValueError):
            continue
        ep: dict[str, dict[str, int]] = {}
        for endpoint_id, value in item["ep"].items():
            entry = _coerce_entry(value)
            if isinstance(endpoint_id, str) and endpoint_id and entry is not None:
                ep[endpoint_id] = entry
        out.append({"t": t, "ep": ep})

    out.sort(key=lambda s: s["t"])
    return out


def load_history(backing: HistoryBacking, *, capacity: int = DEFAULT_CAPACITY) -> HistoryStore:
    try:
        raw = backing.read()
    except FileNotFoundError:
        logger.info("No stored history, starting empty")
        return HistoryStore(capacity=max(1, int(capacity)))
    except (OSError, ValueError) as e:
        logger.info("Discarding unreadable history", error=f"{type(e).__name__}: {e}")
        return HistoryStore(capacity=max(1, int(capacity)))
    return HistoryStore.from_raw(raw, capacity=capacity)


def save_history(history: HistoryStore, backing: HistoryBacking) -> bool:
    try:
        backing.write(history.to_dict())
    except (OSError, TypeError, ValueError) as e:
        logger.warning("Failed to persist history", error=f"{type(e).__name__}: {e}")
        return False
    return True


def _now_ms() -> int:
    return int(time.time() * 1000)


def record_snapshot(
    history: HistoryStore,
    results: Iterable[CheckResult],
    *,
    now_ms: int | None = None,
) -> HistoryStore:
    ep = {r.id: {"s": r.status.code, "ms": max(0, int(r.response_time_ms or 0))} for r in results}
    t = int(now_ms) if now_ms is not None else _now_ms()
    if history.snapshots:
        # Wall-clock steps backwards must not break chronological order.
        t = max(t, int(history.snapshots[-1]["t"]))

    history.snapshots.append({"t": t, "ep": ep})
    overflow = len(history.snapshots) - history.capacity
    if overflow > 0:
        del history.snapshots[:overflow]
    return history


def append_and_persist(
    history: HistoryStore,
    results: Iterable[CheckResult],
    backing: HistoryBacking,
    *,
    now_ms: int | None = None,
) -> HistoryStore:
    record_snapshot(history, results, now_ms=now_ms)
    save_history(history, backing)
    return history


def _latest_ids(history: HistoryStore) -> list[str]:
    if not history.snapshots:
        return []
    return list(history.snapshots[-1]["ep"].keys())


def derive_sparklines(history: HistoryStore) -> dict[str, list[int | None]]:
    """
    Response-time series per endpoint in the newest snapshot, one point per
    retained snapshot: ms when UP/DEGRADED, -1 when DOWN, None when not checked.
    """
    sparklines: dict[str, list[int | None]] = {}
    for endpoint_id in _latest_ids(history):
        points: list[int | None] = []
        for snap in history.snapshots:
            entry = snap["ep"].get(endpoint_id)
            if entry is None:
                points.append(None)
            elif entry["s"] == Status.DOWN.code:
                points.append(DOWN_SENTINEL)
            else:
                points.append(int(entry["ms"]))
        sparklines[endpoint_id] = points
    return sparklines


def derive_uptimes(history: HistoryStore) -> dict[str, float]:
    uptimes: dict[str, float] = {}
    for endpoint_id in _latest_ids(history):
        total = 0
        up = 0
        for snap in history.snapshots:
            entry = snap["ep"].get(endpoint_id)
            if entry is None:
                continue
            total += 1
            if entry["s"] == Status.UP.code:
                up += 1
        uptimes[endpoint_id] = round_half_up((up / total) * 10000) / 100 if total > 0 else 100.0
    return uptimes


def derive_incidents(history: HistoryStore, *, limit: int | None = None) -> list[dict[str, Any]]:
    """Status transitions between an endpoint's consecutive observations, newest first."""
    snapshots = history.snapshots
    if len(snapshots) < 2:
        return []

    current: dict[str, int] = {endpoint_id: entry["s"] for endpoint_id, entry in snapshots[0]["ep"].items()}
    incidents: list[dict[str, Any]] = []
    for snap in snapshots[1:]:
        for endpoint_id, entry in snap["ep"].items():
            prev = current.get(endpoint_id)
            curr = entry["s"]
            if prev is not None and prev != curr:
                incidents.append(
                    {
                        "id": endpoint_id,
                        "fromStatus": _STATUS_NAMES.get(prev, "UNKNOWN"),
                        "toStatus": _STATUS_NAMES.get(curr, "UNKNOWN"),
                        "at": snap["t"],
                    }
                )
            current[endpoint_id] = curr

    incidents.sort(key=lambda i: i["at"], reverse=True)
    if limit is not None:
        return incidents[: max(0, int(limit))]
    return incidents
