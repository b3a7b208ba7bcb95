# file: perpguard/exchange/symbols.py
#
# Interface pública usa "BTC/USDT"; o fio da Binance usa "BTCUSDT".


def is_valid_symbol(symbol: str) -> bool:
    if not symbol or not isinstance(symbol, str):
        return False
    base, sep, quote = symbol.partition("/")
    return bool(sep and base and quote and "/" not in quote)


def to_exchange_symbol(symbol: str) -> str:
    """'BTC/USDT' -> 'BTCUSDT'. Símbolos já no formato da exchange passam direto."""
    return symbol.replace("/", "").upper()


def from_exchange_symbol(symbol: str, quote: str = "USDT") -> str:
    """'BTCUSDT' -> 'BTC/USDT'."""
    if "/" in symbol:
        return symbol
    if symbol.endswith(quote) and len(symbol) > len(quote):
        return f"{symbol[:-len(quote)]}/{quote}"
    return symbol
