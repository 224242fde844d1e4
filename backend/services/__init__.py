from importlib import import_module

__all__ = [
    "polymarket_client",
    "PolymarketClient",
    "kalshi_client",
    "KalshiClient",
    "frequency_controller",
    "FrequencyController",
    "position_tracker",
    "PositionTracker",
    "trade_ingestion_engine",
    "TradeIngestionEngine",
    "copy_trade_simulator",
    "CopyTradeSimulator",
    "arbitrage_discovery_engine",
    "ArbitrageDiscoveryEngine",
    "notifier",
    "DiscordNotifier",
    "maintenance_service",
    "MaintenanceService",
]

_LAZY_EXPORTS = {
    "polymarket_client": ("services.polymarket", "polymarket_client"),
    "PolymarketClient": ("services.polymarket", "PolymarketClient"),
    "kalshi_client": ("services.kalshi_client", "kalshi_client"),
    "KalshiClient": ("services.kalshi_client", "KalshiClient"),
    "frequency_controller": ("services.frequency_controller", "frequency_controller"),
    "FrequencyController": ("services.frequency_controller", "FrequencyController"),
    "position_tracker": ("services.position_tracker", "position_tracker"),
    "PositionTracker": ("services.position_tracker", "PositionTracker"),
    "trade_ingestion_engine": ("services.trade_ingestion", "trade_ingestion_engine"),
    "TradeIngestionEngine": ("services.trade_ingestion", "TradeIngestionEngine"),
    "copy_trade_simulator": ("services.copy_trader", "copy_trade_simulator"),
    "CopyTradeSimulator": ("services.copy_trader", "CopyTradeSimulator"),
    "arbitrage_discovery_engine": ("services.arbitrage_discovery", "arbitrage_discovery_engine"),
    "ArbitrageDiscoveryEngine": ("services.arbitrage_discovery", "ArbitrageDiscoveryEngine"),
    "notifier": ("services.notifier", "notifier"),
    "DiscordNotifier": ("services.notifier", "DiscordNotifier"),
    "maintenance_service": ("services.maintenance", "maintenance_service"),
    "MaintenanceService": ("services.maintenance", "MaintenanceService"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
