"""
Match scoring: ten normalized factors combined by a versioned weight vector.

Modules
-------
factors    : per-factor curves + normalize_breakdown() + composite_score().
propensity : RFM + bid-engagement buyer propensity (the buyer_propensity factor).
insights   : threshold rules → ordered, capped Insight list.
matcher    : MatchScorer + ScoredPair — scores buyer × product pairs from a FactBundle.
"""
