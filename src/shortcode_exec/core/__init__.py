"""
Shortcode Exec Core Module

Ambient infrastructure shared by the execution pipeline:
- Exception hierarchy
- Security configuration and its layered loading
- Structured logging setup
"""

__all__ = []
