from __future__ import annotations

import asyncio
import time
from typing import Any
from urllib.parse import urlsplit

import httpx

from health_checks.common_check import (
    CheckResult,
    ProbeContext,
    ProbeError,
    Status,
    block_age_seconds,
    build_result,
    elapsed_ms,
    http_request,
    json_rpc,
    parse_json_optional,
    round_half_up,
)
from health_checks.registry import EndpointSpec


COSMOS_LATEST_BLOCK_PATH = "/cosmos/base/tendermint/v1beta1/blocks/latest"
COSMOS_BONDED_VALIDATORS_PATH = "/cosmos/staking/v1beta1/validators?status=BOND_STATUS_BONDED&pagination.limit=100"

# Share of the endpoint timeout reserved past the last optional lookup.
_OPTIONAL_DEADLINE_MARGIN = 0.1


def _hex_to_int(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return int(value, 16)
    except ValueError:
        return None


def _to_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _rpc_result(data: Any) -> Any:
    return data.get("result") if isinstance(data, dict) else None


def _halt_message(age_seconds: float) -> str:
    return f"Possible chain halt: last block {round_half_up(age_seconds)}s ago"


async def check_evm_rpc(spec: EndpointSpec, client: httpx.AsyncClient, ctx: ProbeContext) -> CheckResult:
    started = time.perf_counter()
    details: dict[str, Any] = {}
    timeout = spec.timeout_seconds

    block = await json_rpc(client, spec.url, "eth_blockNumber", timeout_seconds=timeout)
    if isinstance(block, dict) and block.get("error"):
        err = block["error"]
        message = err.get("message") if isinstance(err, dict) else None
        raise ProbeError(str(message or "eth_blockNumber failed"))
    height = _hex_to_int(_rpc_result(block))
    if height is None:
        raise ProbeError("eth_blockNumber returned no block height")
    details["blockHeight"] = height

    chain_id = _rpc_result(await json_rpc(client, spec.url, "eth_chainId", timeout_seconds=timeout))
    details["chainId"] = chain_id
    expected = spec.expected_chain_id
    if expected and str(chain_id or "").lower() != expected.lower():
        return build_result(
            spec,
            Status.DEGRADED,
            elapsed_ms(started),
            details,
            f"Chain ID mismatch: expected {expected}, got {chain_id}",
        )

    syncing = _rpc_result(await json_rpc(client, spec.url, "eth_syncing", timeout_seconds=timeout))
    # eth_syncing answers false when in sync, a progress object otherwise.
    details["syncing"] = syncing is not False
    if details["syncing"]:
        return build_result(spec, Status.DEGRADED, elapsed_ms(started), details, "Node is syncing")

    peers = _rpc_result(await json_rpc(client, spec.url, "net_peerCount", timeout_seconds=timeout))
    details["peerCount"] = _hex_to_int(peers)
    return build_result(spec, Status.UP, elapsed_ms(started), details)


async def _get_json(client: httpx.AsyncClient, url: str, *, timeout_seconds: float) -> Any:
    resp = await http_request(client, url, timeout_seconds=timeout_seconds)
    if resp.status_code != 200:
        raise ProbeError(f"HTTP {resp.status_code}")
    data = parse_json_optional(resp.text)
    if data is None:
        raise ProbeError("Invalid JSON response")
    return data


def _remaining_seconds(spec: EndpointSpec, started: float) -> float:
    """What is left of the endpoint timeout, short of the margin the dispatcher deadline needs."""
    budget = spec.timeout_seconds * (1.0 - _OPTIONAL_DEADLINE_MARGIN)
    return budget - (time.perf_counter() - started)


async def _get_json_optional(client: httpx.AsyncClient, url: str, *, timeout_seconds: float) -> Any | None:
    """
    Secondary facts (peers, validator counts); any failure just leaves them out.
    timeout_seconds is what remains of the probe budget.
    """
    if timeout_seconds <= 0:
        return None
    try:
        resp = await asyncio.wait_for(
            http_request(client, url, timeout_seconds=timeout_seconds),
            timeout=timeout_seconds,
        )
    except (httpx.HTTPError, asyncio.TimeoutError):
        return None
    if resp.status_code != 200:
        return None
    return parse_json_optional(resp.text)


def _cosmos_peer_count(net_info: Any) -> int | None:
    if not isinstance(net_info, dict):
        return None
    body = net_info.get("result") if isinstance(net_info.get("result"), dict) else net_info
    peers = body.get("peers")
    if isinstance(peers, list):
        return len(peers)
    return _to_int(body.get("n_peers")) or None


async def check_cosmos_rpc(spec: EndpointSpec, client: httpx.AsyncClient, ctx: ProbeContext) -> CheckResult:
    started = time.perf_counter()
    details: dict[str, Any] = {}
    base = spec.url.rstrip("/")

    status = await _get_json(client, f"{base}/status", timeout_seconds=spec.timeout_seconds)
    body = status.get("result") if isinstance(status, dict) and isinstance(status.get("result"), dict) else status
    sync_info = body.get("sync_info") if isinstance(body, dict) else None
    if isinstance(sync_info, dict):
        details["blockHeight"] = _to_int(sync_info.get("latest_block_height"))
        details["latestBlockTime"] = sync_info.get("latest_block_time")
        details["catchingUp"] = sync_info.get("catching_up")
        if sync_info.get("latest_block_time"):
            age = block_age_seconds(str(sync_info["latest_block_time"]))
            details["blockAgeSec"] = round_half_up(age)
            if age > ctx.halt_threshold_seconds:
                return build_result(spec, Status.DEGRADED, elapsed_ms(started), details, _halt_message(age))
        if sync_info.get("catching_up"):
            return build_result(spec, Status.DEGRADED, elapsed_ms(started), details, "Node is catching up")

    net_info = await _get_json_optional(
        client, f"{base}/net_info", timeout_seconds=_remaining_seconds(spec, started)
    )
    if net_info is not None:
        details["peerCount"] = _cosmos_peer_count(net_info)
    return build_result(spec, Status.UP, elapsed_ms(started), details)


async def check_cosmos_rest(spec: EndpointSpec, client: httpx.AsyncClient, ctx: ProbeContext) -> CheckResult:
    started = time.perf_counter()
    details: dict[str, Any] = {}
    base = spec.url.rstrip("/")

    data = await _get_json(client, f"{base}{COSMOS_LATEST_BLOCK_PATH}", timeout_seconds=spec.timeout_seconds)
    header = None
    if isinstance(data, dict):
        for key in ("block", "sdk_block"):
            block = data.get(key)
            if isinstance(block, dict) and isinstance(block.get("header"), dict):
                header = block["header"]
                break

    if header is not None:
        details["blockHeight"] = _to_int(header.get("height"))
        details["latestBlockTime"] = header.get("time")
        details["chainId"] = header.get("chain_id")
        if header.get("time"):
            age = block_age_seconds(str(header["time"]))
            details["blockAgeSec"] = round_half_up(age)
            if age > ctx.halt_threshold_seconds:
                return build_result(spec, Status.DEGRADED, elapsed_ms(started), details, _halt_message(age))

    validators = await _get_json_optional(
        client, f"{base}{COSMOS_BONDED_VALIDATORS_PATH}", timeout_seconds=_remaining_seconds(spec, started)
    )
    if isinstance(validators, dict):
        vals = validators.get("validators")
        details["bondedValidators"] = len(vals) if isinstance(vals, list) else None
    return build_result(spec, Status.UP, elapsed_ms(started), details)


async def check_cosmos_peer(spec: EndpointSpec, client: httpx.AsyncClient, ctx: ProbeContext) -> CheckResult:
    """A validator is connected when a public node lists its IP among its peers."""
    started = time.perf_counter()
    peer_ip = spec.peer_ip or (urlsplit(spec.url).hostname or "")
    public_rpc = spec.public_rpc or ctx.default_public_rpc
    if not public_rpc:
        raise ProbeError("No public RPC configured")

    resp = await http_request(client, f"{public_rpc.rstrip('/')}/net_info", timeout_seconds=spec.timeout_seconds)
    if resp.status_code != 200:
        raise ProbeError(f"Public RPC returned HTTP {resp.status_code}")
    data = parse_json_optional(resp.text)
    if data is None:
        raise ProbeError("Public RPC returned invalid JSON")

    result = data.get("result") if isinstance(data, dict) else None
    peers = result.get("peers") if isinstance(result, dict) else None
    if not isinstance(peers, list):
        peers = []
    details: dict[str, Any] = {"totalPeers": len(peers)}

    for peer in peers:
        if not isinstance(peer, dict) or peer.get("remote_ip") != peer_ip:
            continue
        node_info = peer.get("node_info") if isinstance(peer.get("node_info"), dict) else {}
        details["moniker"] = node_info.get("moniker")
        details["peerId"] = node_info.get("id")
        return build_result(spec, Status.UP, elapsed_ms(started), details)

    return build_result(spec, Status.DEGRADED, elapsed_ms(started), details, "Validator not found in peer list")
