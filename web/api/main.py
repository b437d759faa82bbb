"""FastAPI cricket auction API."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auction.errors import AuctionError
from auction.models.base import init_db

from web.api.auction_routes import router as auction_router
from web.api.auth_routes import router as auth_router
from web.api.routes import router as api_router

logger = logging.getLogger("auction.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield


app = FastAPI(title="Cricket Auction API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router)
app.include_router(auth_router)
app.include_router(auction_router)


@app.exception_handler(AuctionError)
async def auction_error_handler(request: Request, exc: AuctionError):
    """Domain errors become {"detail", "code"} with the error's HTTP status."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.debug("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/api/health")
async def health():
    return {"status": "ok"}
