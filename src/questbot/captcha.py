import asyncio
import logging

import httpx

import questbot.constants as C
from questbot.errors import CaptchaError

log = logging.getLogger("questbot.captcha")

TURNSTILE_TASK = "AntiTurnstileTaskProxyLess"


class CaptchaSolver:
    """Cloudflare Turnstile solving through the Capsolver HTTP API (always proxyless)."""

    def __init__(
        self,
        api_key: str | None,
        *,
        api_url: str = "https://api.capsolver.com",
        poll_interval: float = C.CAPTCHA_POLL_INTERVAL,
        poll_attempts: int = C.CAPTCHA_POLL_ATTEMPTS,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise CaptchaError("Capsolver API key is required")
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self._http = http

    @classmethod
    def from_settings(cls, settings, api_key: str | None = None, http: httpx.AsyncClient | None = None) -> "CaptchaSolver":
        f = settings.faucet
        return cls(
            api_key or f.api_key,
            api_url=f.captcha_api_url,
            poll_interval=f.captcha_poll_interval,
            poll_attempts=f.captcha_poll_attempts,
            http=http,
        )

    async def _request(self, endpoint: str, data: dict) -> dict:
        body = {"clientKey": self.api_key, **data}
        try:
            if self._http is not None:
                r = await self._http.post(f"{self.api_url}{endpoint}", json=body)
            else:
                async with httpx.AsyncClient(timeout=C.RPC_TIMEOUT * 3) as http:
                    r = await http.post(f"{self.api_url}{endpoint}", json=body)
            parsed = r.json()
        except httpx.HTTPError as e:
            raise CaptchaError(f"Capsolver request failed: {e}") from e
        except ValueError as e:
            raise CaptchaError(f"Failed to parse Capsolver response: {e}") from e
        if parsed.get("errorId", 0) > 0:
            raise CaptchaError(f"Capsolver API error: {parsed.get('errorDescription') or 'Unknown error'}")
        return parsed

    async def get_balance(self) -> float:
        resp = await self._request("/getBalance", {})
        log.info("Capsolver account balance: %s", resp.get("balance"))
        return resp.get("balance", 0)

    async def solve(self, site_key: str, page_url: str) -> str:
        log.info("Solving Turnstile captcha for %s", page_url)
        created = await self._request(
            "/createTask",
            {"task": {"type": TURNSTILE_TASK, "websiteURL": page_url, "websiteKey": site_key}},
        )
        task_id = created.get("taskId")
        if not task_id:
            raise CaptchaError("Capsolver did not return a task id")
        log.debug("Turnstile task created: %s", task_id)

        for attempt in range(1, self.poll_attempts + 1):
            await asyncio.sleep(self.poll_interval)
            resp = await self._request("/getTaskResult", {"taskId": task_id})
            if resp.get("status") == "ready":
                token = (resp.get("solution") or {}).get("token")
                if not token:
                    raise CaptchaError("Capsolver reported ready without a token")
                log.info("Turnstile captcha solved (poll %d/%d)", attempt, self.poll_attempts)
                return token
            log.debug("captcha status %s (poll %d/%d)", resp.get("status"), attempt, self.poll_attempts)

        waited = self.poll_interval * self.poll_attempts
        raise CaptchaError(f"Captcha solving timed out after {waited:.0f}s")
