from payhooks.checkout import CheckoutService
from payhooks.config import get_settings
from payhooks.database import SessionLocal
from payhooks.reconciliation import ReconciliationEngine
from payhooks.status_cache import InMemoryStatusCache, PaymentStoreStatusCache, StatusCache
from payhooks.stores import OrderStore, PaymentStore
from payhooks.verification import WebhookVerifier

# process-local; see status_cache module docstring
memory_status_cache = InMemoryStatusCache()


def get_status_cache() -> StatusCache:
    if get_settings().status_cache_backend == "store":
        return PaymentStoreStatusCache(PaymentStore(SessionLocal))
    return memory_status_cache


def get_engine() -> ReconciliationEngine:
    return ReconciliationEngine(
        payments=PaymentStore(SessionLocal),
        orders=OrderStore(SessionLocal),
        status_cache=get_status_cache(),
        enforce_transitions=get_settings().enforce_transitions,
    )


def get_verifier() -> WebhookVerifier:
    return WebhookVerifier(get_settings())


def get_checkout() -> CheckoutService:
    return CheckoutService(SessionLocal, OrderStore(SessionLocal), PaymentStore(SessionLocal))
