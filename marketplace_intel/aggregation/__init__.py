"""
Aggregation layer: groups and windows source records into immutable facts.

Modules
-------
facts  : Scope, PurchaseHistory, DeliveryOutcomes, PriceHistory,
         BuyerActivity and the FactBundle that carries them.
loader : AggregationLayer.load(scope, as_of) + AggregationError — reads
         the source tables, validates per entity, records failures.
"""
