"""Faucet execution unit.

Solve a Turnstile captcha, ask the Union GraphQL faucet for tokens, then watch the
balance. A single claim may take minutes, which is why it runs as its own unit
with the long FAUCET timeout.
"""

import asyncio
import logging
from collections.abc import Callable

import httpx

from questbot.captcha import CaptchaSolver
from questbot.chain import ChainClient
from questbot.config import Settings
from questbot.errors import CaptchaError
from questbot.logging_config import wallet_tag
from questbot.models import ExecutionError, FaucetParams, TaskDescriptor
from questbot.proxies import ProxyPool

log = logging.getLogger("questbot.faucet")

FAUCET_MUTATION = """mutation UnoFaucetMutation($chainId: String!, $denom: String!, $address: String!, $captchaToken: String!) {
  send(
    chainId: $chainId
    denom: $denom
    address: $address
    captchaToken: $captchaToken
  )
}"""

FAUCET_HEADERS = {
    "Accept": "application/graphql-response+json, application/json",
    "Origin": "https://app.union.build",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/134.0.0.0 Safari/537.36",
}
FAUCET_HTTP_TIMEOUT = 120.0


def default_http_factory(proxy: str | None) -> httpx.AsyncClient:
    return httpx.AsyncClient(proxy=proxy, timeout=FAUCET_HTTP_TIMEOUT)


class FaucetExecutor:
    def __init__(
        self,
        settings: Settings,
        clients: Callable[[str], ChainClient],
        solver_factory: Callable[[str], CaptchaSolver] | None = None,
        http_factory: Callable[[str | None], httpx.AsyncClient] = default_http_factory,
        proxies: ProxyPool | None = None,
    ) -> None:
        self.settings = settings
        self.clients = clients
        self.solver_factory = solver_factory or (lambda api_key: CaptchaSolver.from_settings(settings, api_key))
        self.http_factory = http_factory
        self.proxies = proxies or ProxyPool()

    async def request_tokens(self, chain_id: str, denom: str, address: str, captcha_token: str) -> dict:
        payload = {
            "query": FAUCET_MUTATION,
            "variables": {"chainId": chain_id, "denom": denom, "address": address, "captchaToken": captcha_token},
            "operationName": "UnoFaucetMutation",
        }
        proxy = self.proxies.next()
        headers = {**FAUCET_HEADERS, "Referer": self.settings.faucet.referrer}
        async with self.http_factory(proxy) as http:
            r = await http.post(self.settings.faucet.endpoint, json=payload, headers=headers)
            r.raise_for_status()
            return r.json()

    async def __call__(self, task: TaskDescriptor) -> dict:
        p = FaucetParams.from_task(task)
        tag = wallet_tag(task.wallet_index)
        chain = self.settings.chains.get(p.chain)
        if chain is None:
            raise ExecutionError(f"Unknown faucet chain: {p.chain}")
        try:
            solver = self.solver_factory(p.api_key)
        except CaptchaError as e:
            raise ExecutionError(str(e)) from e

        fc = self.settings.faucet
        client = self.clients(p.chain)
        initial = await client.get_balance(p.address, chain.denom)
        log.info(f"{tag} initial {p.chain} balance: {initial}")

        limit = f"/{p.max_attempts}" if p.max_attempts else ""
        attempts = 0
        response = None
        while p.max_attempts == 0 or attempts < p.max_attempts:
            attempts += 1
            log.info(f"{tag} faucet attempt {attempts}{limit} on {p.chain}")
            try:
                token = await solver.solve(p.site_key, fc.referrer)
                response = await self.request_tokens(chain.chain_id, chain.denom, p.address, token)
                status = (response.get("data") or {}).get("send")
                if status == "ERROR":
                    log.warning(f"{tag} faucet returned ERROR, may need to wait before trying again")
                else:
                    log.info(f"{tag} faucet response: {status}")

                await asyncio.sleep(fc.settle_seconds)
                balance = await client.get_balance(p.address, chain.denom)
                if balance > initial:
                    log.info(f"{tag} received {p.chain} tokens: {initial} -> {balance}")
                    return {
                        "success": True,
                        "attempts": attempts,
                        "initial_balance": initial,
                        "balance": balance,
                        "response": response,
                        "chain": p.chain,
                    }
                log.warning(f"{tag} {p.chain} balance did not increase ({balance})")
            except Exception as e:
                log.error(f"{tag} faucet attempt {attempts} failed: {e.__class__.__name__}: {e}")

            if p.max_attempts == 0 or attempts < p.max_attempts:
                await asyncio.sleep(fc.retry_seconds)

        raise ExecutionError(
            f"{p.chain} faucet did not deliver after {attempts} attempt(s)",
            {"success": False, "attempts": attempts, "initial_balance": initial, "response": response, "chain": p.chain},
        )
