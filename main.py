# main.py (lifespan-based)
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute
from tortoise import Tortoise

from routers import reconciliation
from services import config

logger = logging.getLogger("uvicorn")


async def init_db(db_url: str | None = None) -> None:
    await Tortoise.init(
        db_url=db_url or config.DB_URL,
        modules={"models": ["models"]},
    )
    await Tortoise.generate_schemas()


# ----- lifespan -----
@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info(f"[recon] database ready ({config.DB_URL})")
    try:
        yield
    finally:
        await Tortoise.close_connections()


# ----- app & routers -----
app = FastAPI(lifespan=lifespan, title="Meter Reconciliation API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "X-Total-Count"],
)

app.include_router(reconciliation.router)

for route in app.routes:
    if isinstance(route, APIRoute):
        logger.info("%s -> %s", list(route.methods), route.path)
