"""
Integrations with external AWS services.
"""
