"""
FastAPI routers for the ingestion API.

One module per URL prefix: ``/csv`` upload and finalization, ``/staging``
views, ``/uploads`` sessions, ``/admin`` format review and ``/cron`` maintenance.
"""
