import logging
import os

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from frontdesk import prompts
from frontdesk.audit_sync import AuditClient
from frontdesk.calls import CallRegistry
from frontdesk.cascade import ResponseCascade
from frontdesk.company_config import ConfigError, TenantConfigCache
from frontdesk.config import RuntimeSettings, validate_config
from frontdesk.events import EventLog
from frontdesk.orchestrator import OWNER_STATE_MACHINE, TurnOrchestrator
from frontdesk.post_call import handle_call_ended
from frontdesk.session import CallState, StateCorruptionError
from frontdesk.store_client import StoreClient

load_dotenv()

logger = logging.getLogger(__name__)


class TurnRequest(BaseModel):
    company_id: str
    utterance: str = ""
    turn_number: int | None = None
    caller_phone: str = ""


class EndRequest(BaseModel):
    reason: str = ""


def _fallback(reason: str, turn_number: int | None = None) -> dict:
    logger.warning("Answering with fallback: %s", reason)
    return {
        "response": prompts.FALLBACK,
        "match_source": "state_machine:fallback",
        "lane": None,
        "turn_number": turn_number,
        "escalate": False,
        "degraded": reason,
    }


def create_app(
    settings: RuntimeSettings | None = None,
    store: StoreClient | None = None,
    audit: AuditClient | None = None,
    orchestrator: TurnOrchestrator | None = None,
) -> FastAPI:
    settings = settings or RuntimeSettings.from_env()
    if store is None:
        store = StoreClient(settings.store_url, api_key=settings.store_api_key)
    if audit is None and settings.audit_url:
        audit = AuditClient(events_url=settings.audit_url, webhook_secret=settings.audit_secret)
    if orchestrator is None:
        orchestrator = TurnOrchestrator(
            cascade=ResponseCascade.from_settings(settings),
            kill_switch=settings.cascade_kill_switch,
        )

    app = FastAPI(title="Front Desk Turn Engine")
    app.state.store = store
    app.state.audit = audit
    app.state.orchestrator = orchestrator
    app.state.calls = CallRegistry()
    app.state.configs = TenantConfigCache()

    async def _flush(call_id: str, events) -> None:
        if audit is not None:
            await audit.flush_turn(call_id, list(events))

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/calls/{call_id}/turns")
    async def turn(call_id: str, body: TurnRequest):
        async with app.state.calls.turn(call_id):
            fetched = await store.fetch_config(body.company_id)
            if not fetched.get("success"):
                return _fallback("config_unavailable", body.turn_number)
            try:
                config = app.state.configs.resolve(fetched["config"])
            except ConfigError as e:
                logger.error("Bad config for %s: %s", body.company_id, e)
                return _fallback("config_invalid", body.turn_number)

            loaded = await store.load_state(call_id)
            if not loaded.get("success"):
                return _fallback("state_unavailable", body.turn_number)
            try:
                state = CallState.from_dict(loaded.get("state"))
            except StateCorruptionError as e:
                events = EventLog(turn=body.turn_number or 0)
                events.emit("state_corruption", error=str(e))
                events.emit("owner_selected", owner=OWNER_STATE_MACHINE, reason="state_corruption",
                            match_source="state_machine:fallback")
                await _flush(call_id, events)
                return _fallback("state_corruption", body.turn_number)

            if not state.call_id:
                state.call_id = call_id
                state.company_id = config.company_id
                state.caller_phone = body.caller_phone

            outcome = await orchestrator.process_turn(config, state, body.utterance, body.turn_number)
            saved = await store.save_state(call_id, outcome.state.to_dict())
            if not saved.get("success"):
                logger.error("Call %s turn %d not persisted: %s",
                             call_id, outcome.state.turn_number, saved.get("error"))
            await _flush(call_id, outcome.events)

        return {
            "response": outcome.response,
            "match_source": outcome.match_source,
            "lane": outcome.state.lane.value,
            "turn_number": outcome.state.turn_number,
            "escalate": outcome.state.escalated,
        }

    @app.post("/calls/{call_id}/end")
    async def end(call_id: str, body: EndRequest | None = None):
        async with app.state.calls.turn(call_id):
            loaded = await store.load_state(call_id)
            state = None
            if loaded.get("success") and loaded.get("state"):
                try:
                    state = CallState.from_dict(loaded["state"])
                except StateCorruptionError as e:
                    logger.error("Cannot archive call %s: %s", call_id, e)
            result = {"success": False, "error": "no state"}
            if state is not None:
                result = await handle_call_ended(state, audit)
        app.state.calls.hangup(call_id)
        return {"archived": bool(result.get("success")), "reason": body.reason if body else ""}

    return app


app = create_app()


if __name__ == "__main__":
    validate_config()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run("frontdesk.server:app", host="0.0.0.0", port=port)
