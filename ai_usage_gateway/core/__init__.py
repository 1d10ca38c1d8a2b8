"""
Core modules for the AI usage gateway.

This package contains admission control (window counters, rate limits,
token budgets), the feature registry, pricing and the error taxonomy.
"""
