"""Response and request bodies of the read API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class TokenAnalysisResponse(BaseModel):
    dev_holds: int
    top10_holds: int
    phishing_holds: int
    snipers_hold: int
    insiders_hold: int
    holders_count: int
    txns_24h: int
    net_buy_1m_usd: float
    net_buy_24h_usd: float
    last_indexed_at: datetime | None = None
    source: str

    model_config = {"from_attributes": True}


class BatchAnalysisRequest(BaseModel):
    addresses: list[str] = Field(..., min_length=1, max_length=200)


class BatchAnalysisResponse(BaseModel):
    results: dict[str, TokenAnalysisResponse]


class CreatorFeesResponse(BaseModel):
    token_address: str
    total_amount: str
    total_usd: float
    collections: int


class CacheClearResponse(BaseModel):
    cleared: str
