"""
Reorder prediction: when a buyer is next expected to purchase a category.

Modules
-------
reorder : ReorderEstimate + estimate() / confidence() — pure functions.
"""
