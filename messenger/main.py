import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from messenger import config, db, schemas
from messenger.auth import Session
from messenger.data_service import DataService
from messenger.errors import NotAuthenticatedError, RemoteError
from messenger.feed import LocalFeed, RedisFeed, UpdateFeed
from messenger.store import ChatStore

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

TABLES = {"chats", "chat_participants", "messages", "reactions", "pinned_messages", "users"}


def queue_event(outbox: asyncio.Queue, change: schemas.ChangeEvent) -> bool:
    """Queue a change for a websocket client without blocking the feed."""
    try:
        outbox.put_nowait(change.model_dump(mode="json"))
    except asyncio.QueueFull:
        return False
    return True


def make_feed() -> UpdateFeed:
    if config.FEED_BACKEND == "redis":
        return RedisFeed(config.REDIS_URL)
    return LocalFeed()


def create_app(database_url: str = None, feed: UpdateFeed = None, **engine_kwargs) -> FastAPI:
    engine = db.make_engine(database_url, **engine_kwargs)
    feed = feed or make_feed()
    data = DataService(db.make_session_factory(engine), feed)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.create_all(engine)
        yield
        await feed.close()
        await engine.dispose()

    app = FastAPI(title="Messenger", lifespan=lifespan)
    app.state.data = data
    app.state.feed = feed

    @app.exception_handler(NotAuthenticatedError)
    async def not_authenticated(request: Request, exc: NotAuthenticatedError):
        return JSONResponse(status_code=401, content={"detail": exc.message})

    @app.exception_handler(RemoteError)
    async def remote_error(request: Request, exc: RemoteError):
        return JSONResponse(status_code=400, content={"detail": exc.message})

    @app.exception_handler(ValueError)
    async def bad_value(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    async def get_session(authorization: Optional[str] = Header(None)) -> Session:
        session = Session(data)
        if not authorization or not authorization.lower().startswith("bearer "):
            raise NotAuthenticatedError()
        await session.restore(authorization.split(" ", 1)[1])
        return session

    async def get_store(session: Session = Depends(get_session)) -> ChatStore:
        # server-side stores are per request, nothing is rendered from them
        return ChatStore(data, session, feed, optimistic=False)

    @app.post("/auth/signup", response_model=schemas.User)
    async def signup(payload: schemas.UserCreate):
        return await Session(data).sign_up(payload.email, payload.password, payload.display_name)

    @app.post("/auth/token", response_model=schemas.Token)
    async def login(payload: schemas.Credentials):
        session = Session(data)
        user = await session.sign_in(payload.email, payload.password)
        return schemas.Token(access_token=session.access_token, user_id=user.id)

    @app.get("/chats", response_model=List[schemas.Chat])
    async def list_chats(store: ChatStore = Depends(get_store)):
        return list(await store.load_chats())

    @app.post("/chats/direct", response_model=schemas.ChatCreated)
    async def create_direct_chat(payload: schemas.DirectChatCreate,
                                 store: ChatStore = Depends(get_store)):
        return schemas.ChatCreated(chat_id=await store.create_direct_chat(payload.user_id))

    @app.post("/chats/group", response_model=schemas.ChatCreated)
    async def create_group_chat(payload: schemas.GroupChatCreate,
                                store: ChatStore = Depends(get_store)):
        chat_id = await store.create_group_chat(payload.name, payload.participants)
        return schemas.ChatCreated(chat_id=chat_id)

    @app.get("/chats/{chat_id}/messages", response_model=List[schemas.Message])
    async def chat_history(chat_id: str, store: ChatStore = Depends(get_store)):
        return list(await store.load_messages(chat_id))

    @app.post("/chats/{chat_id}/messages", response_model=schemas.Message)
    async def send_message(chat_id: str, payload: schemas.MessageIn,
                           store: ChatStore = Depends(get_store)):
        return await store.send_message(chat_id, payload.text, reply_to=payload.reply_to)

    @app.websocket("/ws/{table}")
    async def websocket_endpoint(websocket: WebSocket, table: str, token: str = "",
                                 chat_id: Optional[str] = None):
        session = Session(data)
        try:
            await session.restore(token)
        except NotAuthenticatedError as e:
            await websocket.close(code=1008, reason=e.message)
            return
        if table not in TABLES:
            await websocket.close(code=1008, reason=f"Unknown table {table!r}")
            return

        outbox: asyncio.Queue = asyncio.Queue(maxsize=config.WS_OUTBOX_SIZE)

        async def forward(change: schemas.ChangeEvent):
            if not queue_event(outbox, change):
                logger.warning("Dropping %s event for slow client %s", table, session.user.id)

        async def pump():
            while True:
                await websocket.send_json(await outbox.get())

        # registered before the handshake completes, so the client sees every event after it
        sub = await feed.subscribe(
            f"ws-{session.user.id}-{table}", table, forward,
            filter=f"chat_id=eq.{chat_id}" if chat_id else None)
        sender = None
        try:
            await websocket.accept()
            logger.info("User %s listening on %s", session.user.id, table)
            sender = asyncio.create_task(pump())
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("User %s stopped listening on %s", session.user.id, table)
        finally:
            await sub.unsubscribe()
            if sender is not None:
                sender.cancel()
                try:
                    await sender
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("Sending feed events to user %s failed", session.user.id)

    return app


app = create_app()
