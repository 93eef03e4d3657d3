"""
Settlement services: aggregation, filtering, allocation, commitment,
ledger stages, keeper, tracking bridge and earnings queries
"""
