from api.routes_arbitrage import router as arbitrage_router
from api.routes_fee_payers import router as fee_payers_router

__all__ = ["arbitrage_router", "fee_payers_router"]
