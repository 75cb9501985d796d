"""FastAPI application exposing the holder analysis to the UI."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from haven_indexer.api.schemas import (
    BatchAnalysisRequest,
    BatchAnalysisResponse,
    CacheClearResponse,
    CreatorFeesResponse,
    TokenAnalysisResponse,
)
from haven_indexer.api.wallet_analysis import WalletAnalysisService
from haven_indexer.config import Settings
from haven_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tokens", tags=["tokens"])


def get_service(request: Request) -> WalletAnalysisService:
    return request.app.state.analysis


@router.get("/{address}/analysis", response_model=TokenAnalysisResponse)
async def token_analysis(address: str, service: WalletAnalysisService = Depends(get_service)):
    return TokenAnalysisResponse.model_validate(await service.analyze_token(address))


@router.post("/analysis", response_model=BatchAnalysisResponse)
async def batch_analysis(body: BatchAnalysisRequest, service: WalletAnalysisService = Depends(get_service)):
    results = await service.analyze_batch(body.addresses)
    return BatchAnalysisResponse(
        results={address: TokenAnalysisResponse.model_validate(a) for address, a in results.items()}
    )


@router.get("/{address}/creator-fees", response_model=CreatorFeesResponse)
async def creator_fees(address: str, service: WalletAnalysisService = Depends(get_service)):
    totals = await service.creator_fees(address)
    return CreatorFeesResponse(
        token_address=address.lower(),
        total_amount=str(totals.total_amount),
        total_usd=float(totals.total_usd),
        collections=totals.collections,
    )


@router.delete("/analysis/cache", response_model=CacheClearResponse)
async def clear_analysis_cache(
    address: str | None = Query(None),
    service: WalletAnalysisService = Depends(get_service),
):
    if address:
        service.clear_cache(address)
        return CacheClearResponse(cleared=address.lower())
    service.clear_all_cache()
    return CacheClearResponse(cleared="all")


def create_app(
    settings: Settings,
    *,
    db: DatabaseManager | None = None,
    service: WalletAnalysisService | None = None,
) -> FastAPI:
    """Build the API app; ``db`` and ``service`` are injectable for tests."""
    owns_db = db is None
    if db is None:
        db = DatabaseManager(
            settings.database.url,
            pool_size=settings.database.pool_size,
            echo=settings.database.echo,
        )
    if service is None:
        service = WalletAnalysisService(
            db,
            cache_ttl_seconds=settings.api.cache_ttl_seconds,
            recent_token_blocks=settings.indexer.backfill_lookback_blocks,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Read API starting")
        yield
        if owns_db:
            await db.dispose_async()
        logger.info("Read API stopped")

    app = FastAPI(
        title="Haven Indexer API",
        description="Holder analysis and creator fees for Haven tokens",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.analysis = service

    origins = [o.strip().rstrip("/") for o in settings.api.cors_origins.split(",") if o.strip()]
    logger.info("CORS allowed origins: %s", origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
