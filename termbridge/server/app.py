"""FastAPI server — hosts the terminal WebSocket and a small JSON API."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from termbridge import __version__
from termbridge.config import TermBridgeConfig, load_config
from termbridge.parser.rules import RuleSet, load_rules
from termbridge.server.gateway import ConnectionGateway
from termbridge.server.protocol import SyncEvent
from termbridge.server.transcripts import TranscriptStore
from termbridge.server.ws_manager import ConnectionManager
from termbridge.session.registry import SessionRegistry


def create_app(
    config: TermBridgeConfig | None = None,
    registry: SessionRegistry | None = None,
    rules: RuleSet | None = None,
) -> FastAPI:
    """Build the app. The registry lives exactly as long as the app does."""
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.registry = registry or SessionRegistry(config.agent)
        app.state.manager = ConnectionManager()
        app.state.transcripts = TranscriptStore(
            app.state.registry, rules if rules is not None else load_rules()
        )
        yield
        app.state.transcripts.close()
        await app.state.registry.shutdown()

    app = FastAPI(
        title="termbridge",
        description="Browser front end for an interactive AI coding CLI",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── REST Endpoints ──────────────────────────────────────

    @app.get("/api/health")
    async def health():
        """Health check endpoint."""
        registry: SessionRegistry = app.state.registry
        return {
            "status": "ok",
            "version": __version__,
            "clients": app.state.manager.client_count,
            "sessions": len(registry.active_sessions()),
            "terminalMode": registry.terminal_mode.value,
            "claudeAvailable": registry.agent_available,
        }

    @app.get("/api/sessions")
    async def list_sessions():
        """List every session the registry knows about."""
        return {
            "sessions": [
                s.model_dump(mode="json") for s in app.state.registry.list_sessions()
            ]
        }

    @app.get("/api/sessions/{session_id}/messages")
    async def session_messages(session_id: str):
        """The structured conversation parsed from a session's output."""
        parser = app.state.transcripts.get(session_id)
        if parser is None:
            raise HTTPException(status_code=404, detail="Unknown session")
        return {
            "sessionId": session_id,
            "streaming": parser.is_streaming,
            "messages": [m.model_dump(mode="json") for m in parser.all_messages()],
        }

    @app.post("/api/sync-events")
    async def sync_event(event: SyncEvent):
        """Relay a plan-file change from the sync watcher to every client."""
        notified = app.state.manager.broadcast(event.model_dump(exclude_none=True))
        return {"status": "ok", "clients_notified": notified}

    # ── WebSocket Endpoint ──────────────────────────────────

    async def terminal_socket(websocket: WebSocket):
        """One browser tab. ``?sessionId=`` reattaches to a running session."""
        await websocket.accept()
        gateway = ConnectionGateway(websocket, app.state.registry, config.heartbeat)
        app.state.manager.connect(gateway)
        try:
            await gateway.run(requested_session_id=websocket.query_params.get("sessionId"))
        finally:
            app.state.manager.disconnect(gateway)

    app.add_api_websocket_route("/ws", terminal_socket)
    app.add_api_websocket_route("/", terminal_socket)

    return app
