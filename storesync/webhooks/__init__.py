"""Inbound webhooks: translation into typed jobs, deduplication, verification.

Shopify deliveries are signature-verified at the HTTP edge, translated into
one typed job per topic and enqueued on the webhook queue with the event id
as job id.
"""
