"""
Core modules for Feature Gate.

This package contains flag evaluation, decision caching, rollout
targeting, A/B experiment assignment and usage analytics.
"""
