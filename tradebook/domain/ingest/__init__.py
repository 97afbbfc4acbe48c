"""
Broker CSV ingestion for Tradebook.

This package turns raw broker exports into orders: parsing, broker format
detection, AI-assisted column mapping, review finalization, staging of orders
for formats awaiting approval, multi-chunk upload sessions and the scheduled
staging cleanup.
"""
