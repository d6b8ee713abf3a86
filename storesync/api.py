"""HTTP surface: Shopify webhook ingress plus job and sync admin routes.

Webhook handler:
1. Reads raw body (needed for HMAC verification)
2. Verifies the Shopify signature
3. Translates and enqueues the event (event id = job id)
4. Returns 202 for a new event, 200 for a duplicate delivery

Security contract:
- Never return error details to the webhook caller
- Return 202 even for unrecognized topics and unparseable bodies
- Return 401 only for signature failures
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from storesync.exceptions import (
    DuplicateEventError,
    MappingBusyError,
    NotFoundError,
    SyncFailedError,
    WebhookVerificationError,
)
from storesync.queue.jobs import cancel_job, get_job_by_id, retry_job
from storesync.queue.payloads import BatchOperationType
from storesync.queue.registry import QueueName
from storesync.queue.store import Job
from storesync.service import SyncService
from storesync.webhooks.translator import InboundWebhook
from storesync.webhooks.verification import SHOPIFY_HMAC_HEADER, require_shopify_hmac

logger = logging.getLogger(__name__)


class BatchRequest(BaseModel):
    operation_type: BatchOperationType
    store_id: str | None = None
    product_ids: list[str] | None = None
    triggered_by: str = "api"


class ConflictResolutionRequest(BaseModel):
    quantity: int = Field(ge=0)


def _job_view(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "queue": job.queue,
        "name": job.name,
        "state": job.state.value,
        "attempts_made": job.attempts_made,
        "attempts": job.options.attempts,
        "priority": job.options.priority,
        "failed_reason": job.failed_reason,
        "result": job.result,
    }


def _log_webhook(topic: str, event_id: str, shop: str, status: str) -> None:
    logger.info("WEBHOOK_AUDIT provider=shopify topic=%s id=%s shop=%s status=%s", topic, event_id, shop, status)


def create_app(service: SyncService) -> FastAPI:
    app = FastAPI(title="storesync")
    registry = service.registry

    @app.post("/webhooks/shopify")
    async def shopify_webhook(request: Request):
        """Receive Shopify webhooks (signature-verified)."""
        body = await request.body()
        headers = {k.lower(): v for k, v in request.headers.items()}

        try:
            require_shopify_hmac(service.settings.shopify_webhook_secret, body, headers.get(SHOPIFY_HMAC_HEADER))
        except WebhookVerificationError:
            _log_webhook("unknown", "unknown", "unknown", "signature_failed")
            return JSONResponse({"status": "unauthorized"}, status_code=401)

        topic = headers.get("x-shopify-topic", "")
        event_id = headers.get("x-shopify-webhook-id", "")
        shop = headers.get("x-shopify-shop-domain", "")
        if not event_id:
            _log_webhook(topic, "", shop, "missing_event_id")
            return JSONResponse({"status": "received"}, status_code=202)

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            _log_webhook(topic, event_id, shop, "invalid_json")
            return JSONResponse({"status": "received"}, status_code=202)

        try:
            job = service.receive_webhook(InboundWebhook(event_id, topic, shop, payload))
        except DuplicateEventError:
            _log_webhook(topic, event_id, shop, "duplicate")
            return JSONResponse({"status": "duplicate"}, status_code=200)
        except Exception:
            logger.exception("Failed to enqueue webhook event %s (%s)", event_id, topic)
            _log_webhook(topic, event_id, shop, "enqueue_failed")
            return JSONResponse({"status": "received"}, status_code=202)

        if job is None:
            return JSONResponse({"status": "received"}, status_code=202)
        return JSONResponse({"status": "accepted", "job_id": job.id}, status_code=202)

    # -- jobs ---------------------------------------------------------------

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str, queue: str | None = None):
        job = get_job_by_id(registry, job_id, queue)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        return _job_view(job)

    @app.delete("/jobs/{job_id}")
    def delete_job(job_id: str, queue: str | None = None):
        if not cancel_job(registry, job_id, queue):
            raise HTTPException(status_code=404, detail="job not found")
        return {"cancelled": True}

    @app.post("/jobs/{job_id}/retry")
    def retry(job_id: str, queue: str | None = None):
        if get_job_by_id(registry, job_id, queue) is None:
            raise HTTPException(status_code=404, detail="job not found")
        if not retry_job(registry, job_id, queue):
            raise HTTPException(status_code=409, detail="job is not in the failed state")
        return {"retried": True}

    @app.post("/batch", status_code=202)
    def schedule_batch(request: BatchRequest):
        job = service.schedule_batch(
            request.operation_type,
            store_id=request.store_id,
            product_ids=request.product_ids,
            triggered_by=request.triggered_by,
        )
        return _job_view(job)

    # -- sync ---------------------------------------------------------------

    @app.post("/sync/{sku}/{store_domain}")
    def sync_product(sku: str, store_domain: str):
        try:
            outcome = service.orchestrator.sync_product_to_store(sku, store_domain)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except MappingBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except SyncFailedError as exc:
            raise HTTPException(status_code=502, detail=exc.detail) from exc
        return outcome.to_dict()

    @app.get("/conflicts")
    def list_conflicts(include_resolved: bool = False):
        conflicts = service.repository.list_conflicts(unresolved_only=not include_resolved)
        return [
            {
                "id": c.id,
                "product_id": c.product_id,
                "store_id": c.store_id,
                "central_quantity": c.central_quantity,
                "store_quantity": c.store_quantity,
                "strategy": c.strategy.value,
                "resolved": c.resolved,
                "created_at": c.created_at.isoformat(),
            }
            for c in conflicts
        ]

    @app.post("/conflicts/{conflict_id}/resolve")
    def resolve_conflict(conflict_id: str, request: ConflictResolutionRequest):
        try:
            outcome = service.orchestrator.resolve_manual_conflict(conflict_id, request.quantity)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except MappingBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return outcome.to_dict()

    @app.get("/products/{sku}/status")
    def product_status(sku: str):
        product = service.repository.get_product_by_sku(sku)
        if product is None:
            raise HTTPException(status_code=404, detail="product not found")
        mappings = service.repository.list_mappings(product_id=product.id)
        inventory = service.repository.get_inventory(product.id)
        return {
            "sku": sku,
            "status": service.product_status(product.id).value,
            "quantity": inventory.quantity if inventory is not None else 0,
            "mappings": [
                {
                    "store_id": m.store_id,
                    "sync_status": m.sync_status.value,
                    "last_synced_at": m.last_synced_at.isoformat() if m.last_synced_at else None,
                    "synced_quantity": m.synced_quantity,
                    "last_error": m.last_error,
                    "conflict_id": m.conflict_id,
                }
                for m in mappings
            ],
        }

    logger.info("Routes registered: /webhooks/shopify, /jobs, /batch, /sync, /conflicts, /products")
    return app
