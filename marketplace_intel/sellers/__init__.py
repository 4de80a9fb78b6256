"""
Seller scorecards: delivery reliability and pricing per seller.

Modules
-------
scorecard : ScorecardComponents + score_seller() — pure functions.
"""
