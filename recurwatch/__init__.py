"""
recurwatch - Recurring Charge Detection Engine

Finds subscription-like charge series in a transaction history,
classifies their health and raises alerts for forgotten ("zombie"),
price-increased and duplicated services.

DESIGN PRINCIPLES:
1. Statistics decide, AI enriches
2. A user's decision always beats a computed one
3. One merchant's AI failure never fails a run
4. Every write is per merchant, so partial progress is always valid
5. Storage and AI backends are swappable
"""

__version__ = "1.0.0"
__author__ = "recurwatch maintainers"
