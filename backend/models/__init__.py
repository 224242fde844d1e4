from .market import RawTrade, TradeMetadata, PolymarketMarket, KalshiMarket

__all__ = [
    "RawTrade",
    "TradeMetadata",
    "PolymarketMarket",
    "KalshiMarket",
]
