from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from health_checks.checks_chain import (
    COSMOS_LATEST_BLOCK_PATH,
    check_cosmos_peer,
    check_cosmos_rest,
    check_cosmos_rpc,
    check_evm_rpc,
)
from health_checks.common_check import ProbeContext, ProbeError, Status, block_age_seconds, parse_block_time
from health_checks.dispatch import run_check
from health_checks.registry import EndpointSpec


def _spec(url: str, check_type: str, **extra) -> EndpointSpec:
    return EndpointSpec.model_validate(
        {
            "id": "node",
            "name": "Node",
            "category": "blockchain",
            "url": url,
            "checkType": check_type,
            "timeout": 5000,
            **extra,
        }
    )


def _block_time(seconds_ago: float) -> str:
    # Tendermint style: nanosecond fraction, Z suffix.
    t = datetime.now(timezone.utc) - timedelta(seconds=seconds_ago)
    return t.strftime("%Y-%m-%dT%H:%M:%S.%f") + "123Z"


def test_parse_block_time_truncates_nanoseconds() -> None:
    dt = parse_block_time("2024-05-01T10:00:00.123456789Z")
    assert dt == datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)
    now = datetime(2024, 5, 1, 10, 2, 0, 123456, tzinfo=timezone.utc)
    assert block_age_seconds("2024-05-01T10:00:00.123456789Z", now=now) == 120.0


@pytest.mark.asyncio
async def test_evm_rpc_healthy_node(stub_server, rpc) -> None:
    stub_server.route(
        "POST",
        "/",
        rpc({"eth_blockNumber": "0x10", "eth_chainId": "0x6669", "eth_syncing": False, "net_peerCount": "0x5"}),
    )
    spec = _spec(stub_server.base_url + "/", "evm-rpc", expectedChainId="0x6669")
    async with httpx.AsyncClient() as client:
        r = await check_evm_rpc(spec, client, ProbeContext())

    assert r.status is Status.UP
    assert r.details["blockHeight"] == 16
    assert r.details["chainId"] == "0x6669"
    assert r.details["syncing"] is False
    assert r.details["peerCount"] == 5


@pytest.mark.asyncio
async def test_evm_rpc_chain_id_mismatch_is_degraded(stub_server, rpc) -> None:
    stub_server.route("POST", "/", rpc({"eth_blockNumber": "0x1", "eth_chainId": "0x2"}))
    spec = _spec(stub_server.base_url + "/", "evm-rpc", expectedChainId="0x1")
    async with httpx.AsyncClient() as client:
        r = await check_evm_rpc(spec, client, ProbeContext())

    assert r.status is Status.DEGRADED
    assert "0x1" in r.error
    assert "0x2" in r.error
    assert r.details["blockHeight"] == 1


@pytest.mark.asyncio
async def test_evm_rpc_chain_id_compare_ignores_case(stub_server, rpc) -> None:
    stub_server.route(
        "POST",
        "/",
        rpc({"eth_blockNumber": "0x1", "eth_chainId": "0xAB", "eth_syncing": False, "net_peerCount": "0x0"}),
    )
    spec = _spec(stub_server.base_url + "/", "evm-rpc", expectedChainId="0xab")
    async with httpx.AsyncClient() as client:
        r = await check_evm_rpc(spec, client, ProbeContext())
    assert r.status is Status.UP


@pytest.mark.asyncio
async def test_evm_rpc_syncing_and_errors(stub_server, rpc) -> None:
    stub_server.route(
        "POST",
        "/sync",
        rpc({"eth_blockNumber": "0x1", "eth_chainId": "0x1", "eth_syncing": {"currentBlock": "0x1"}}),
    )
    stub_server.route("POST", "/err", rpc({"eth_blockNumber": {"error": {"code": -32000, "message": "node is down"}}}))
    async with httpx.AsyncClient() as client:
        syncing = await check_evm_rpc(_spec(stub_server.base_url + "/sync", "evm-rpc"), client, ProbeContext())
        with pytest.raises(ProbeError, match="node is down"):
            await check_evm_rpc(_spec(stub_server.base_url + "/err", "evm-rpc"), client, ProbeContext())

    assert syncing.status is Status.DEGRADED
    assert syncing.error == "Node is syncing"


@pytest.mark.asyncio
async def test_cosmos_rpc_fresh_block(stub_server) -> None:
    stub_server.route(
        "GET",
        "/status",
        (
            200,
            {
                "result": {
                    "sync_info": {
                        "latest_block_height": "1234",
                        "latest_block_time": _block_time(3),
                        "catching_up": False,
                    }
                }
            },
        ),
    )
    stub_server.route("GET", "/net_info", (200, {"result": {"n_peers": "2", "peers": [{}, {}]}}))
    async with httpx.AsyncClient() as client:
        r = await check_cosmos_rpc(_spec(stub_server.base_url, "cosmos-rpc"), client, ProbeContext())

    assert r.status is Status.UP
    assert r.details["blockHeight"] == 1234
    assert r.details["catchingUp"] is False
    assert 0 <= r.details["blockAgeSec"] <= 10
    assert r.details["peerCount"] == 2


@pytest.mark.asyncio
async def test_cosmos_rpc_stale_block_is_possible_halt(stub_server) -> None:
    stub_server.route(
        "GET",
        "/status",
        (
            200,
            {
                "result": {
                    "sync_info": {
                        "latest_block_height": "99",
                        "latest_block_time": _block_time(120),
                        "catching_up": False,
                    }
                }
            },
        ),
    )
    async with httpx.AsyncClient() as client:
        r = await check_cosmos_rpc(
            _spec(stub_server.base_url, "cosmos-rpc"), client, ProbeContext(halt_threshold_seconds=60)
        )

    assert r.status is Status.DEGRADED
    assert r.error.startswith("Possible chain halt")
    assert 119 <= r.details["blockAgeSec"] <= 125


@pytest.mark.asyncio
async def test_cosmos_rpc_catching_up(stub_server) -> None:
    stub_server.route(
        "GET",
        "/status",
        (
            200,
            {
                "result": {
                    "sync_info": {
                        "latest_block_height": "5",
                        "latest_block_time": _block_time(1),
                        "catching_up": True,
                    }
                }
            },
        ),
    )
    async with httpx.AsyncClient() as client:
        r = await check_cosmos_rpc(_spec(stub_server.base_url, "cosmos-rpc"), client, ProbeContext())
    assert r.status is Status.DEGRADED
    assert r.error == "Node is catching up"


@pytest.mark.asyncio
async def test_cosmos_rpc_status_failure_raises(stub_server) -> None:
    stub_server.route("GET", "/status", (500, "internal"))
    async with httpx.AsyncClient() as client:
        with pytest.raises(ProbeError, match="HTTP 500"):
            await check_cosmos_rpc(_spec(stub_server.base_url, "cosmos-rpc"), client, ProbeContext())


@pytest.mark.asyncio
async def test_cosmos_rest_latest_block_and_validators(stub_server) -> None:
    stub_server.route(
        "GET",
        COSMOS_LATEST_BLOCK_PATH,
        (200, {"sdk_block": {"header": {"height": "777", "time": _block_time(2), "chain_id": "integra_26217-1"}}}),
    )
    stub_server.route(
        "GET",
        "/cosmos/staking/v1beta1/validators",
        (200, {"validators": [{"moniker": "a"}, {"moniker": "b"}, {"moniker": "c"}]}),
    )
    async with httpx.AsyncClient() as client:
        r = await check_cosmos_rest(_spec(stub_server.base_url, "cosmos-rest"), client, ProbeContext())

    assert r.status is Status.UP
    assert r.details["blockHeight"] == 777
    assert r.details["chainId"] == "integra_26217-1"
    assert r.details["bondedValidators"] == 3


@pytest.mark.asyncio
async def test_cosmos_rest_stale_block(stub_server) -> None:
    stub_server.route(
        "GET",
        COSMOS_LATEST_BLOCK_PATH,
        (200, {"block": {"header": {"height": "10", "time": _block_time(300), "chain_id": "x"}}}),
    )
    async with httpx.AsyncClient() as client:
        r = await check_cosmos_rest(_spec(stub_server.base_url, "cosmos-rest"), client, ProbeContext())

    assert r.status is Status.DEGRADED
    assert r.error.startswith("Possible chain halt")
    assert "bondedValidators" not in r.details


def _net_info(*peers: tuple[str, str, str]) -> dict:
    return {
        "result": {
            "peers": [
                {"remote_ip": ip, "node_info": {"moniker": moniker, "id": node_id}} for ip, moniker, node_id in peers
            ]
        }
    }


@pytest.mark.asyncio
async def test_cosmos_peer_found_by_url_host(stub_server) -> None:
    stub_server.route("GET", "/net_info", (200, _net_info(("10.0.0.4", "other", "aa"), ("10.0.0.5", "val-1", "bb"))))
    spec = _spec("http://10.0.0.5:26657", "cosmos-peer-check", publicRpc=stub_server.base_url)
    async with httpx.AsyncClient() as client:
        r = await check_cosmos_peer(spec, client, ProbeContext())

    assert r.status is Status.UP
    assert r.details == {"totalPeers": 2, "moniker": "val-1", "peerId": "bb"}


@pytest.mark.asyncio
async def test_cosmos_peer_missing_and_default_public_rpc(stub_server) -> None:
    stub_server.route("GET", "/net_info", (200, _net_info(("10.0.0.4", "other", "aa"))))
    spec = _spec("http://10.0.0.9:26657", "cosmos-peer-check", peerIp="10.0.0.9")
    async with httpx.AsyncClient() as client:
        r = await check_cosmos_peer(spec, client, ProbeContext(default_public_rpc=stub_server.base_url))

    assert r.status is Status.DEGRADED
    assert r.error == "Validator not found in peer list"
    assert r.details["totalPeers"] == 1


@pytest.mark.asyncio
async def test_cosmos_peer_public_rpc_failure(stub_server) -> None:
    stub_server.route("GET", "/net_info", (503, "busy"))
    spec = _spec("http://10.0.0.5:26657", "cosmos-peer-check", publicRpc=stub_server.base_url)
    async with httpx.AsyncClient() as client:
        with pytest.raises(ProbeError, match="Public RPC returned HTTP 503"):
            await check_cosmos_peer(spec, client, ProbeContext())
        with pytest.raises(ProbeError, match="No public RPC configured"):
            await check_cosmos_peer(_spec("http://10.0.0.5:26657", "cosmos-peer-check"), client, ProbeContext())


def _fresh_status(seconds_ago: float = 1) -> dict:
    return {
        "result": {
            "sync_info": {
                "latest_block_height": "42",
                "latest_block_time": _block_time(seconds_ago),
                "catching_up": False,
            }
        }
    }


@pytest.mark.asyncio
async def test_cosmos_rpc_slow_net_info_is_left_out(stub_server) -> None:
    stub_server.route("GET", "/status", (200, _fresh_status()))
    stub_server.route("GET", "/net_info", (200, {"result": {"peers": [{}]}}))
    stub_server.delay("/net_info", 2.0)
    spec = _spec(stub_server.base_url, "cosmos-rpc", timeout=1000)
    async with httpx.AsyncClient() as client:
        r = await run_check(spec, client, ProbeContext())

    assert r.status is Status.UP
    assert r.details["blockHeight"] == 42
    assert "peerCount" not in r.details


@pytest.mark.asyncio
async def test_cosmos_rest_slow_validator_count_is_left_out(stub_server) -> None:
    stub_server.route(
        "GET",
        COSMOS_LATEST_BLOCK_PATH,
        (200, {"block": {"header": {"height": "9", "time": _block_time(1), "chain_id": "x"}}}),
    )
    stub_server.route("GET", "/cosmos/staking/v1beta1/validators", (200, {"validators": [{}]}))
    stub_server.delay("/cosmos/staking/v1beta1/validators", 2.0)
    spec = _spec(stub_server.base_url, "cosmos-rest", timeout=1000)
    async with httpx.AsyncClient() as client:
        r = await run_check(spec, client, ProbeContext())

    assert r.status is Status.UP
    assert r.details["blockHeight"] == 9
    assert "bondedValidators" not in r.details


@pytest.mark.asyncio
async def test_halt_threshold_compares_unrounded_age(stub_server) -> None:
    # 60.3s rounds to 60 but is already past a 60s threshold.
    stub_server.route("GET", "/status", (200, _fresh_status(60.3)))
    async with httpx.AsyncClient() as client:
        r = await check_cosmos_rpc(
            _spec(stub_server.base_url, "cosmos-rpc"), client, ProbeContext(halt_threshold_seconds=60)
        )

    assert r.status is Status.DEGRADED
    assert r.error.startswith("Possible chain halt")
    assert r.details["blockAgeSec"] in (60, 61)
