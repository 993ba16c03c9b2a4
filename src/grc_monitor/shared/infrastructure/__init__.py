"""
Infrastructure Layer
=====================

Low-level technical concerns:
- Logging setup
- Clock and identifier source
"""
