"""
Core modules for Credit Gate.

This package contains the accounting core (credit ledger, free-tier counter,
rate limiter, action gateway) and the tailoring operations built on it.
"""
