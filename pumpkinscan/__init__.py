"""
pumpkinscan

Scans the tiles of a public canvas for a marker sprite from many source
addresses of an owned CIDR block, and keeps the discovered markers in a JSON
store.
"""

__version__ = "0.1.0"
