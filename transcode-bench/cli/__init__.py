"""
Command implementations for the transcoding benchmark.
"""
