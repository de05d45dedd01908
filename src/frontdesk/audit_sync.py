import asyncio
import httpx
import logging

logger = logging.getLogger(__name__)


class AuditClient:
    """HTTP client for the event store.

    Critical turn events are awaited before the turn's response goes out;
    advisory events are sent in the background. Every POST retries once
    with a 2-second backoff on failure.
    """

    def __init__(
        self,
        *,
        events_url: str,
        calls_url: str = "",
        webhook_secret: str = "",
        timeout: float = 5.0,
        retry_delay: float = 2.0,
    ):
        self.events_url = events_url
        self.calls_url = calls_url or events_url
        self.secret = webhook_secret
        self.timeout = timeout
        self.retry_delay = retry_delay
        self._background: set[asyncio.Task] = set()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Webhook-Secret"] = self.secret
        return headers

    async def _post_with_retry(self, url: str, payload: dict, label: str) -> dict:
        """POST with one retry after ``retry_delay`` seconds on failure."""
        for attempt in range(2):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=payload, headers=self._headers())
                    resp.raise_for_status()
                    return resp.json()
            except Exception as e:
                if attempt == 0:
                    logger.warning("%s failed (attempt 1), retrying in %ss: %s", label, self.retry_delay, e)
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error("%s failed after retry: %s", label, e)
                    return {"success": False, "error": str(e)}
        return {"success": False, "error": "unreachable"}

    async def record_events(self, call_id: str, events: list, critical: bool = True) -> dict:
        """Send one batch of turn events."""
        if not events:
            return {"success": True, "count": 0}
        payload = {
            "call_id": call_id,
            "critical": critical,
            "events": [e.to_dict() for e in events],
        }
        label = "Critical event sync" if critical else "Advisory event sync"
        return await self._post_with_retry(self.events_url, payload, label)

    async def flush_turn(self, call_id: str, events: list) -> dict:
        """Await the critical events of a turn and schedule the advisory ones."""
        critical = [e for e in events if e.critical]
        advisory = [e for e in events if not e.critical]
        result = await self.record_events(call_id, critical, critical=True)
        if advisory:
            task = asyncio.create_task(self.record_events(call_id, advisory, critical=False))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return result

    async def drain(self) -> None:
        """Wait for background advisory sends. Call at shutdown."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def send_call_archive(self, payload: dict) -> dict:
        """Send the end-of-call record."""
        return await self._post_with_retry(self.calls_url, payload, "Call archive sync")
