"""
Gateway webhook endpoints

The raw body is passed through untouched; signatures are computed over it.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.core.database import get_session
from tourpay.models.payment import PaymentGatewayType
from tourpay.services.webhook_service import webhook_service

router = APIRouter()


async def _ingest(request: Request, db: AsyncSession, gateway: PaymentGatewayType) -> JSONResponse:
    raw_body = await request.body()
    ack = await webhook_service.ingest(db, raw_body, request.headers, gateway)
    return JSONResponse(status_code=ack.status_code, content=ack.body)


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_session)) -> JSONResponse:
    return await _ingest(request, db, PaymentGatewayType.STRIPE)


@router.post("/chapa")
async def chapa_webhook(request: Request, db: AsyncSession = Depends(get_session)) -> JSONResponse:
    return await _ingest(request, db, PaymentGatewayType.CHAPA)
