from contextlib import asynccontextmanager

from fastapi import FastAPI

from lostfound_chat.config.logging_config import setup_logging
from lostfound_chat.config.settings import Config
from lostfound_chat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from lostfound_chat.repositories.message_repository import MessageRepository
from lostfound_chat.routers.conversations import router as conversations_router
from lostfound_chat.routers.messages import router as messages_router
from lostfound_chat.utils.realtime_bus import close_bus


@asynccontextmanager
async def lifespan(app: FastAPI):

    setup_logging(Config.LOG_LEVEL, Config.LOG_FILE)
    await connect_to_mongo()
    await MessageRepository(get_database()).ensure_indexes()
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="Lost & Found Messaging", lifespan=lifespan)


app.include_router(conversations_router)
app.include_router(messages_router)


@app.get("/")
async def root():

    return {"service": "lostfound-chat", "status": "ok"}
