"""
Perkstore: employee rewards storefront authentication.

Employee ID + knowledge-factor login with lockout, bearer sessions, and a
client-side session tracker.
"""

__version__ = "0.1.0"
