"""
SwingDesk - Main FastAPI Application
Operator API for the risk and capital allocation engine
"""

import logging
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import uvicorn

from config.settings import settings
from core.database.trading_models import BucketKind, OrderType, TradeSide, TradingMode
from core.engine import TradingEngine, bootstrap_engine
from core.risk.exceptions import EngineError
from core.risk.risk_gate import OrderIntent

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.engine = bootstrap_engine(settings)
    logger.info(f"{settings.app_name} started successfully")
    yield
    app.state.engine.shutdown()


def get_engine(request: Request) -> TradingEngine:
    """Engine dependency, built by the application lifespan"""
    return request.app.state.engine


# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Position risk management and capital allocation engine",
    version="1.0.0",
    debug=settings.debug,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RiskCheckRequest(BaseModel):
    """Order intent submitted for a pre-trade check"""
    portfolio_id: int
    symbol: str
    side: TradeSide = TradeSide.LONG
    quantity: int = Field(gt=0)
    entry_price: Decimal = Field(gt=0)
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    client_order_id: Optional[str] = None
    signal_key: Optional[str] = None
    bucket: BucketKind = BucketKind.SWING
    order_type: OrderType = OrderType.MARKET

    def to_intent(self) -> OrderIntent:
        client_order_id = self.client_order_id
        if client_order_id is None:
            if not self.signal_key:
                raise HTTPException(status_code=422, detail="client_order_id or signal_key is required")
            client_order_id = OrderIntent.derive_client_order_id(self.signal_key, date.today())
        return OrderIntent(
            client_order_id=client_order_id,
            portfolio_id=self.portfolio_id,
            symbol=self.symbol,
            side=self.side,
            quantity=self.quantity,
            entry_price=self.entry_price,
            stop_loss=self.stop_loss,
            take_profit=self.take_profit,
            bucket=self.bucket,
            order_type=self.order_type,
        )


@app.get("/health")
def health_check(engine: TradingEngine = Depends(get_engine)):
    """Health check endpoint for monitoring"""
    db_healthy = engine.db.check_health()
    breaker = engine.circuit_breaker_status(
        TradingMode.PAPER if settings.paper_trading else TradingMode.LIVE)
    return {
        "status": "healthy" if db_healthy else "degraded",
        "app": settings.app_name,
        "version": "1.0.0",
        "database": engine.db.get_connection_info(),
        "circuit_breaker": breaker.to_dict()
    }


@app.get("/portfolios/{portfolio_id}")
def get_portfolio(portfolio_id: int, engine: TradingEngine = Depends(get_engine)):
    """Portfolio equity, buckets and open positions"""
    state = engine.portfolio_state(portfolio_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Portfolio {portfolio_id} not found")
    return state


@app.post("/portfolios/{portfolio_id}/rebalance")
def rebalance_portfolio(portfolio_id: int, engine: TradingEngine = Depends(get_engine)):
    """Recompute and persist the capital bucket allocation"""
    try:
        allocation = engine.rebalancer.run(portfolio_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except EngineError as e:
        logger.error(f"Rebalance of portfolio {portfolio_id} failed: {e}")
        raise HTTPException(status_code=409, detail=e.to_dict())
    return {"portfolio_id": portfolio_id, **allocation.to_dict()}


@app.post("/risk/check")
def risk_check(request: RiskCheckRequest, engine: TradingEngine = Depends(get_engine)):
    """Run the pre-trade risk gate without creating an order"""
    intent = request.to_intent()
    try:
        result = engine.check(intent)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except EngineError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    return {"client_order_id": intent.client_order_id, **result.to_dict()}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
