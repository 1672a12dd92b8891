"""
parachute-search - semantic indexing and hybrid retrieval for voice captures.

Usage:
    parachute-search sync            # Index new or changed captures
    parachute-search search "query"  # Hybrid vector + keyword search
    parachute-search stats           # Show index statistics
"""

__version__ = "0.1.0"
