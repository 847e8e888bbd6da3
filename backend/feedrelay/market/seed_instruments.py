"""Instrument table and per-instrument parameters for the simulated feed."""

# XTS exchange segment codes
NSECM = 1
NSEFO = 2

# XTS instrument types
FUTURES = 1
OPTIONS = 2
EQUITY = 8

# (exchange, symbol) -> (exchange segment, exchange instrument id, instrument type)
SEED_INSTRUMENTS: dict[tuple[str, str], tuple[int, int, int]] = {
    ("NSE", "NIFTY"): (NSECM, 26000, EQUITY),
    ("NSE", "BANKNIFTY"): (NSECM, 26001, EQUITY),
    ("NSE", "FINNIFTY"): (NSECM, 26034, EQUITY),
    ("NSE", "RELIANCE"): (NSECM, 2885, EQUITY),
    ("NSE", "TCS"): (NSECM, 11536, EQUITY),
    ("NSE", "INFY"): (NSECM, 1594, EQUITY),
    ("NSE", "HDFCBANK"): (NSECM, 1333, EQUITY),
    ("NSE", "SBIN"): (NSECM, 3045, EQUITY),
}

# Realistic starting prices, keyed by exchange instrument id
SEED_PRICES: dict[int, float] = {
    26000: 19500.50,
    26001: 44100.00,
    26034: 19650.00,
    2885: 2450.00,
    11536: 3520.00,
    1594: 1460.00,
    1333: 1620.00,
    3045: 590.00,
}

# Per-instrument walk parameters
# sigma: annualized volatility, beta: loading on the shared market shock (0..1)
INSTRUMENT_PARAMS: dict[int, dict[str, float]] = {
    26000: {"sigma": 0.12, "beta": 0.95},  # Indices move almost entirely with the market
    26001: {"sigma": 0.16, "beta": 0.9},
    26034: {"sigma": 0.15, "beta": 0.9},
    2885: {"sigma": 0.25, "beta": 0.6},
    11536: {"sigma": 0.22, "beta": 0.5},
    1594: {"sigma": 0.26, "beta": 0.5},
    1333: {"sigma": 0.22, "beta": 0.75},
    3045: {"sigma": 0.30, "beta": 0.7},  # PSU bank: high volatility
}

# Default parameters for instruments not in the table above
DEFAULT_PARAMS: dict[str, float] = {"sigma": 0.25, "beta": 0.4}
