"""
Pydantic wire models
"""
