"""
ISPCore - Backend multi-tenant para ISPs
Aprovisionamiento y reconciliación de perfiles y clientes en MikroTik RouterOS.
"""
