"""Shared fixtures for the storesync test suite."""

from __future__ import annotations

import threading

import pytest

from storesync.config import Settings
from storesync.exceptions import PermanentApplyError
from storesync.models import Product, Store
from storesync.sync.locks import InMemoryLockProvider
from storesync.sync.orchestrator import SyncOrchestrator
from storesync.sync.repository import InMemorySyncRepository
from storesync.sync.storefront import InMemoryStorefrontClient

WEBHOOK_SECRET = "shopify-test-secret"


class ScriptedStorefront(InMemoryStorefrontClient):
    """In-memory storefront whose calls can be scripted to fail or block.

    ``get_errors`` / ``set_errors`` are raised (and consumed) in order before
    the real call.  Writes for SKUs in ``reject_skus`` always fail
    permanently.  When ``gate`` is set, reads block until it is released.
    """

    def __init__(self, levels: dict[tuple[str, str], int] | None = None) -> None:
        super().__init__(levels)
        self.get_errors: list[Exception] = []
        self.set_errors: list[Exception] = []
        self.set_calls = 0
        self.reject_skus: set[str] = set()
        self.gate: threading.Event | None = None
        self.entered = threading.Event()

    def get_inventory_level(self, store, sku):
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.get_errors:
            raise self.get_errors.pop(0)
        return super().get_inventory_level(store, sku)

    def set_inventory_level(self, store, sku, quantity):
        self.set_calls += 1
        if sku in self.reject_skus:
            raise PermanentApplyError(f"{store.domain}: {sku} rejected")
        if self.set_errors:
            raise self.set_errors.pop(0)
        super().set_inventory_level(store, sku, quantity)


@pytest.fixture()
def settings() -> Settings:
    """Settings with zero retry delays so failure paths run instantly."""
    return Settings(
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        lock_wait=2.0,
        shopify_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture()
def repository() -> InMemorySyncRepository:
    """Two stores (S1, S2) and product P1 / SKU-1 with 100 units centrally."""
    repo = InMemorySyncRepository()
    repo.add_store(Store("S1", "Main", "main.myshopify.com"))
    repo.add_store(Store("S2", "Outlet", "outlet.myshopify.com"))
    repo.add_product(Product("P1", "SKU-1", "Tee"), quantity=100)
    return repo


@pytest.fixture()
def storefront() -> ScriptedStorefront:
    return ScriptedStorefront()


@pytest.fixture()
def locks() -> InMemoryLockProvider:
    return InMemoryLockProvider()


@pytest.fixture()
def orchestrator(repository, storefront, locks, settings) -> SyncOrchestrator:
    return SyncOrchestrator(repository, storefront, locks, settings, sleep=lambda _: None)
