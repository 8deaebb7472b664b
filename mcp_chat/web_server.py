"""HTTP API for mcp-chat."""

import asyncio
import json
import signal
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from mcp_chat.abort import cancel_task
from mcp_chat.config import Config, get_config
from mcp_chat.engine import CompletionEngine
from mcp_chat.exceptions import AbortedError, DescriptorError
from mcp_chat.llm import set_provider
from mcp_chat.logging import bind_request_context, get_logger
from mcp_chat.models import ChatRequest, SaveMessagesRequest, Turn
from mcp_chat.persistence import PersistenceSync, RemotePersistence
from mcp_chat.protocol import STREAM_HEADERS
from mcp_chat.store import ChatStore
from mcp_chat.stream_bridge import StreamBridge, unsaved_request_turns
from mcp_chat.tools.mcp import ToolProviderPool

log = get_logger(__name__)

USER_ID_HEADER = "x-user-id"
DISCONNECT_POLL_SECONDS = 0.5


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(item) for item in first.get("loc", ()))
    return f"Invalid request body: {location}: {first.get('msg', 'invalid')}" if location else first.get("msg", "")


async def _read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


async def _watch_disconnect(request: web.Request, abort_event: asyncio.Event) -> None:
    """Set the abort event once the client connection goes away."""
    while not abort_event.is_set():
        transport = request.transport
        if transport is None or transport.is_closing():
            log.info("Client connection closed, aborting request")
            abort_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


class ChatServer:
    """Chat streaming, history and persistence routes."""

    def __init__(
        self,
        config: Config | None = None,
        engine: CompletionEngine | None = None,
        pool: ToolProviderPool | None = None,
        store: ChatStore | None = None,
        persistence: PersistenceSync | None = None,
        finalizer: PersistenceSync | RemotePersistence | None = None,
    ):
        self.config = config or get_config()
        self.engine = engine or CompletionEngine()
        self.pool = pool or ToolProviderPool()
        self.store = store or ChatStore(self.config.storage.path)
        self.persistence = persistence or PersistenceSync(self.store)
        if finalizer is not None:
            self.finalizer = finalizer
        elif self.config.storage.persistence_url:
            self.finalizer = RemotePersistence(self.config.storage.persistence_url)
        else:
            self.finalizer = self.persistence

    @staticmethod
    def _user_id(request: web.Request, fallback: str = "") -> str:
        return (fallback or request.headers.get(USER_ID_HEADER, "")).strip()

    async def chat(self, request: web.Request) -> web.StreamResponse:
        """``POST /api/chat`` - run one turn and stream it back."""
        body = await _read_json(request)
        if not isinstance(body, dict):
            return _error("Invalid JSON in request body", 400)
        try:
            chat_request = ChatRequest.model_validate(body)
        except ValidationError as e:
            return _error(_validation_message(e), 400)
        if not chat_request.messages:
            return _error("messages must not be empty", 400)

        user_id = self._user_id(request, chat_request.user_id)
        chat_id = chat_request.chat_id
        bind_request_context(chat_id=chat_id, user_id=user_id)

        abort_event = asyncio.Event()
        watcher = asyncio.create_task(_watch_disconnect(request, abort_event))
        try:
            try:
                lease = await self.pool.acquire(chat_request.mcp_servers, abort_event)
            except DescriptorError as e:
                return _error(str(e), 400)
            except AbortedError:
                log.info("Request aborted while connecting tool providers")
                return web.Response(status=499)

            response = web.StreamResponse(status=200, headers=STREAM_HEADERS)
            try:
                await response.prepare(request)
            except BaseException:
                await lease.release()
                raise

            async def _finish(turns: list[Turn]) -> bool:
                return await self.finalizer.save(turns, chat_id, user_id=user_id)

            run = self.engine.run(
                self.engine.system_prompt(),
                chat_request.messages,
                model=self.config.resolve_model(chat_request.selected_model),
                tools=lease.tools,
                abort_event=abort_event,
            )
            bridge = StreamBridge(
                run,
                lease,
                on_finish=_finish,
                request_turns=unsaved_request_turns(chat_request.messages),
            )
            try:
                await bridge.pipe(response.write)
            except asyncio.CancelledError:
                abort_event.set()
                raise

            if not bridge.disconnected and not abort_event.is_set():
                try:
                    await response.write_eof()
                except ConnectionError:
                    pass
            log.info("Chat turn finished", state=run.state.value, steps=run.steps)
            return response
        finally:
            await cancel_task(watcher)

    async def get_chat(self, request: web.Request) -> web.Response:
        """``GET /api/chats/{id}`` - stored history for one chat."""
        user_id = self._user_id(request)
        if not user_id:
            return _error(f"Missing {USER_ID_HEADER} header", 400)
        chat_id = request.match_info["id"]
        chat = await self.store.get_chat(chat_id, user_id=user_id)
        if chat is None:
            return _error("Chat not found", 404)
        return web.json_response(chat.to_wire())

    async def list_chats(self, request: web.Request) -> web.Response:
        """``GET /api/chats`` - the caller's chats, newest first."""
        user_id = self._user_id(request)
        if not user_id:
            return _error(f"Missing {USER_ID_HEADER} header", 400)
        chats = await self.store.list_chats(user_id)
        return web.json_response([chat.to_wire() for chat in chats])

    async def delete_chat(self, request: web.Request) -> web.Response:
        """``DELETE /api/chats/{id}``."""
        user_id = self._user_id(request)
        if not user_id:
            return _error(f"Missing {USER_ID_HEADER} header", 400)
        deleted = await self.store.delete_chat(request.match_info["id"], user_id)
        if not deleted:
            return _error("Chat not found", 404)
        return web.json_response({"success": True})

    async def save_messages(self, request: web.Request) -> web.Response:
        """``POST /api/chat/messages`` - persistence write."""
        body = await _read_json(request)
        if not isinstance(body, dict):
            return _error("Invalid JSON in request body", 400)
        try:
            payload = SaveMessagesRequest.model_validate(body)
        except ValidationError as e:
            return _error(_validation_message(e), 400)

        user_id = self._user_id(request, payload.user_id)
        saved = await self.persistence.save(payload.messages, payload.chat_id, user_id=user_id)
        if not saved:
            return _error("Failed to save messages", 500)
        return web.json_response({"success": True})

    async def list_models(self, request: web.Request) -> web.Response:
        """``GET /api/models``."""
        return web.json_response({
            "default": self.config.model.model,
            "models": self.config.model_ids(),
        })

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.store.close()
        if isinstance(self.finalizer, RemotePersistence):
            await self.finalizer.close()
        await self.engine.provider.close()
        set_provider(None)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/chat", self.chat)
        app.router.add_post("/api/chat/messages", self.save_messages)
        app.router.add_get("/api/chats", self.list_chats)
        app.router.add_get("/api/chats/{id}", self.get_chat)
        app.router.add_delete("/api/chats/{id}", self.delete_chat)
        app.router.add_get("/api/models", self.list_models)
        app.on_cleanup.append(self._on_cleanup)
        return app


async def _run_server(config: Config) -> None:
    """Start the web server and wait for a stop signal."""
    server = ChatServer(config)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if not stop_event.is_set():
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except (NotImplementedError, OSError):
            # Windows doesn't support add_signal_handler for SIGTERM.
            pass

    app = server.create_app()
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, config.web.host, config.web.port)
    await site.start()
    log.info("Server started", host=config.web.host, port=config.web.port)

    try:
        await stop_event.wait()
    finally:
        log.info("Server stopping")
        await runner.cleanup()


def run_web_server(config: Config) -> None:
    """Entry point for running the web server."""
    try:
        asyncio.run(_run_server(config))
    except KeyboardInterrupt:
        pass
