import httpx
import logging

from frontdesk.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)


class StoreClient:
    """HTTP client for the tenant config store and the call state store.

    Wraps each call with a circuit breaker: after 3 consecutive failures,
    store calls are skipped for 30s and failure dicts are returned so the
    server can answer the turn with the fallback instead of hanging.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=30.0,
            label="state store",
        )
        if client is not None:
            self._client = client
        else:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["X-API-Key"] = api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )

    async def close(self):
        """Close the shared HTTP client. Call at shutdown."""
        await self._client.aclose()

    async def fetch_config(self, company_id: str) -> dict:
        """Return {"success": True, "config": {...}} or a failure dict."""
        if not self._circuit.allow():
            logger.warning("Store circuit breaker open — no config for %s", company_id)
            return {"success": False, "error": "store unavailable"}
        try:
            resp = await self._client.get(f"/companies/{company_id}/config")
            resp.raise_for_status()
            self._circuit.succeeded()
            return {"success": True, "config": resp.json()}
        except Exception as e:
            self._circuit.failed()
            logger.error("fetch_config failed for %s: %s", company_id, e)
            return {"success": False, "error": str(e)}

    async def load_state(self, call_id: str) -> dict:
        """Return {"success": True, "state": {...} | None}; a 404 means a new call."""
        if not self._circuit.allow():
            logger.warning("Store circuit breaker open — no state for %s", call_id)
            return {"success": False, "error": "store unavailable"}
        try:
            resp = await self._client.get(f"/calls/{call_id}/state")
            if resp.status_code == 404:
                self._circuit.succeeded()
                return {"success": True, "state": None}
            resp.raise_for_status()
            self._circuit.succeeded()
            return {"success": True, "state": resp.json()}
        except Exception as e:
            self._circuit.failed()
            logger.error("load_state failed for %s: %s", call_id, e)
            return {"success": False, "error": str(e)}

    async def save_state(self, call_id: str, state: dict) -> dict:
        if not self._circuit.allow():
            logger.warning("Store circuit breaker open — state for %s not saved", call_id)
            return {"success": False, "error": "store unavailable"}
        try:
            resp = await self._client.put(f"/calls/{call_id}/state", json=state)
            resp.raise_for_status()
            self._circuit.succeeded()
            return {"success": True}
        except Exception as e:
            self._circuit.failed()
            logger.error("save_state failed for %s: %s", call_id, e)
            return {"success": False, "error": str(e)}
