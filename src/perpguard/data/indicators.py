# file: perpguard/data/indicators.py

import pandas as pd


# ATR (média simples do true range)
def add_atr(df, period=14, name="atr"):
    df = df.copy()
    high = df["high"]
    low  = df["low"]
    close_prev = df["close"].shift(1)

    tr1 = high - low
    tr2 = (high - close_prev).abs()
    tr3 = (low  - close_prev).abs()

    tr = pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)
    df["tr"] = tr
    df[name] = tr.rolling(period).mean()
    return df


def latest_atr(df: pd.DataFrame, period: int = 14):
    """Último ATR válido, ou None se não houver candles suficientes."""
    if df is None or len(df) < period:
        return None
    value = add_atr(df, period)["atr"].iloc[-1]
    if pd.isna(value) or value <= 0:
        return None
    return float(value)
