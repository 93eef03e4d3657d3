"""
Queue workers
"""
