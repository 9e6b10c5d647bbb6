from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conftest import FakeChainClient
from questbot.constants import ExecutionKind
from questbot.faucet import FAUCET_MUTATION, FaucetExecutor
from questbot.models import ExecutionError, TaskDescriptor
from questbot.proxies import ProxyPool


class FakeSolver:
    def __init__(self) -> None:
        self.solved: list[tuple[str, str]] = []

    async def solve(self, site_key: str, page_url: str) -> str:
        self.solved.append((site_key, page_url))
        return f"token-{len(self.solved)}"


class FaucetHttp:
    """Records faucet POSTs and the proxy each client was built with."""

    def __init__(self, status: int = 200, send: str = "0xabc") -> None:
        self.status = status
        self.send = send
        self.requests: list[dict] = []
        self.proxies: list[str | None] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        return httpx.Response(self.status, json={"data": {"send": self.send}})

    def factory(self, proxy: str | None) -> httpx.AsyncClient:
        self.proxies.append(proxy)
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def faucet_task(max_attempts: int = 3, api_key: str = "CAP-KEY") -> TaskDescriptor:
    return TaskDescriptor.create(
        ExecutionKind.FAUCET,
        0,
        "faucet-UNION",
        chain="UNION",
        address="union1walletzero",
        site_key="0xSITE",
        api_key=api_key,
        max_attempts=max_attempts,
    )


def make_executor(settings, balances, http: FaucetHttp, solver: FakeSolver | None = None, proxies=None):
    client = FakeChainClient("UNION", settings.chains["UNION"], balances=balances)
    solver = solver or FakeSolver()
    executor = FaucetExecutor(
        settings,
        lambda name: client,
        solver_factory=lambda api_key: solver,
        http_factory=http.factory,
        proxies=ProxyPool(proxies),
    )
    return executor, solver


def test_claim_succeeds_once_the_balance_goes_up(settings) -> None:
    http = FaucetHttp()
    executor, solver = make_executor(settings, [100, 100, 150], http, proxies=["10.0.0.1:8080", "10.0.0.2:8080"])

    payload = asyncio.run(executor(faucet_task()))

    assert payload == {
        "success": True,
        "attempts": 2,
        "initial_balance": 100,
        "balance": 150,
        "response": {"data": {"send": "0xabc"}},
        "chain": "UNION",
    }
    assert solver.solved == [("0xSITE", settings.faucet.referrer)] * 2
    assert http.proxies == ["http://10.0.0.1:8080", "http://10.0.0.2:8080"]
    body = http.requests[1]
    assert body["query"] == FAUCET_MUTATION
    assert body["variables"] == {
        "chainId": settings.chains["UNION"].chain_id,
        "denom": "muno",
        "address": "union1walletzero",
        "captchaToken": "token-2",
    }


def test_claim_gives_up_after_max_attempts(settings) -> None:
    http = FaucetHttp(send="ERROR")
    executor, _ = make_executor(settings, 100, http)

    with pytest.raises(ExecutionError, match="did not deliver after 2 attempt") as exc:
        asyncio.run(executor(faucet_task(max_attempts=2)))

    assert exc.value.payload == {
        "success": False,
        "attempts": 2,
        "initial_balance": 100,
        "response": {"data": {"send": "ERROR"}},
        "chain": "UNION",
    }
    assert http.proxies == [None, None]


def test_http_errors_count_as_failed_attempts(settings) -> None:
    http = FaucetHttp(status=503)
    executor, solver = make_executor(settings, 100, http)

    with pytest.raises(ExecutionError) as exc:
        asyncio.run(executor(faucet_task(max_attempts=3)))

    assert exc.value.payload["attempts"] == 3
    assert exc.value.payload["response"] is None
    assert len(solver.solved) == 3


def test_missing_captcha_key_fails_the_task(settings) -> None:
    client = FakeChainClient("UNION", settings.chains["UNION"])
    executor = FaucetExecutor(settings, lambda name: client)

    with pytest.raises(ExecutionError, match="API key"):
        asyncio.run(executor(faucet_task(api_key="")))
