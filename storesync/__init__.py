"""storesync: multi-store inventory synchronization engine.

Keeps one central inventory record consistent with the quantities held by
any number of Shopify storefronts.  Webhooks and batch triggers become jobs
on named queues; workers reconcile each (product, store) mapping under a
per-mapping lock and push the result to the store with bounded retries.

Entry points:
    - storesync.service.create_service / build_redis_service
    - storesync.api.create_app
"""

__version__ = "0.1.0"
