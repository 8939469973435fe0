"""
CPR Options Trader

Intraday index-options engine driven by daily pivot (CPR) levels.
"""

__version__ = "1.0.0"
