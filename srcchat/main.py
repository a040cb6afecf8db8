from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from srcchat.config import get_settings
from srcchat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from srcchat.repositories.conversation_repository import ConversationRepository
from srcchat.repositories.message_repository import MessageRepository
from srcchat.routers.conversations import router as conversations_router
from srcchat.routers.messages import router as messages_router
from srcchat.routers.participants import router as participants_router
from srcchat.utils.errors import ChatError
from srcchat.utils.log_config import configure_logging
from srcchat.utils.realtime_bus import close_bus, get_bus


@asynccontextmanager
async def lifespan(app: FastAPI):

    configure_logging(get_settings().log_level)
    await connect_to_mongo()
    db = get_database()
    await MessageRepository(db).ensure_indexes()
    await ConversationRepository(db).ensure_indexes()
    await get_bus()
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="SRC Portal Chat", lifespan=lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


app.include_router(conversations_router)
app.include_router(messages_router)
app.include_router(participants_router)


@app.get("/")
async def root():

    bus = await get_bus()
    return {"message": "SRC chat service", "realtime": type(bus).__name__}
