"""
Utility modules.

    - timeit.py: timing helper
"""
