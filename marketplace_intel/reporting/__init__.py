"""
marketplace_intel.reporting — Terminal formatting and flat-file export.

This package formats service results for CLI display and writes flat
files (CSV, JSON, Parquet) for BI tools and manual analysis.

It does NOT compute anything new; every figure comes from ``IntelService``.

Modules:
  formatters — ASCII terminal table formatters for Typer CLI commands.
  export     — CSV/JSON/Parquet export helpers.
"""
