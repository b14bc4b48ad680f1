"""
Job lifecycle tracking for encoding jobs.
"""
