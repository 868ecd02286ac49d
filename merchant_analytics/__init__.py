"""Merchant analytics: per-user top merchants by net volume, pushed to Salesforce."""
