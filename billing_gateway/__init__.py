"""
Billing Gateway: admission control for the multi-tenant billing API.
"""
