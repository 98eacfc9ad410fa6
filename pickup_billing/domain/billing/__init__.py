"""Billing domain - provider gateway, subscription service and webhooks"""
