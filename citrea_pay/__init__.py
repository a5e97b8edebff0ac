"""
Citrea Pay - invoice payments on Citrea.

Derives a one-time receiving address per invoice, watches the chain for
matching transfers and sweeps confirmed funds to the treasury.
"""

__version__ = "0.1.0"
