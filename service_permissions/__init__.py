"""
Permission resolution service for the Access Layer.

See ``service_permissions.app`` for the resolution core.
"""
