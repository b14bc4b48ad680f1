"""
Encoding service and object storage adapters.
"""
