"""Business-logic layer (MongoDB-backed raw samples, candles and aggregation settings).

Aggregation engine pieces live in:
- raw_source.py (read-only raw samples)
- candle_aggregator.py (window partitioning and OHLC reduction)
- candle_store.py (idempotent candle upserts and ordered reads)
- metric_reader.py (uniform series reads for alert evaluation)
- resolution.py (effective aggregation level precedence)
- candle_scheduler.py (scheduled refresh job)
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.
