"""
external_data — ingestion and persistence for the sUSDe term spread.

Providers
---------
- pendle:    daily implied / underlying yield and TVL per sUSDe market (one market = one maturity)
- ethena:    protocol staking yield (latest value)
- defillama: aggregator pool APY and TVL (daily)
- spot price comes from data_loader (yfinance)

Storage
-------
SQLite database at data/term_spread.db (override with $TERM_SPREAD_DB);
merged daily features in data/features/term_spread_daily.parquet;
quality reports in data/reports/.

CLI
---
python -m external_data.update
python -m external_data.update --rebuild_only
python -m external_data.update --schedule --hour 6
"""

from .storage import PATHS, Store

__all__ = ["PATHS", "Store"]
