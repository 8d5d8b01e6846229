from contextlib import asynccontextmanager

from dotenv import load_dotenv

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .chat import routers as chat_router
from .chat.service import ChatService

from .core.config import CORS_ORIGINS
from .core.middleware import logging_middleware
from .core.supabase_client import close_supabase, get_supabase
from .utils.logging_config import setup_logging

load_dotenv()
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    client = await get_supabase()
    app.state.chat = ChatService(client)
    try:
        yield
    finally:
        await close_supabase()


def create_app(lifespan=lifespan) -> FastAPI:
    app = FastAPI(title="Marketplace messaging", lifespan=lifespan)
    app.include_router(chat_router.router, prefix="/chat", tags=["Chat"])

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(logging_middleware)

    return app


app = create_app()
