# patchkeeper/services/__init__.py
"""
Maintenance and synchronization services.
"""
