"""
Core infrastructure.

    - config.py: configuration loading and validation
    - logging/: structured logging with numeric levels
    - metrics.py: Prometheus metrics collection
"""
