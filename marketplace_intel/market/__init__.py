"""
Market context: rolling category price windows, supply/demand and trends.

Modules
-------
context : MarketContextAggregator — context(category), trends(),
          price_vs_market_score(product), supply_demand_score(category).
          Computed on read; never persisted.
"""
