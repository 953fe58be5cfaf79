"""
Zoho CRM integration: job (lead) sync, contractor directory sync and webhooks.
"""
