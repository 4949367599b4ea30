"""
ISPCore - Servicios
"""
