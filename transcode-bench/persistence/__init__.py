"""
Per-request record persistence.
"""
