"""
ISPCore - Schemas
"""
