import pytest

from main import app
from routers import rate_limit
from services import runtime


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def reset_runtime_singletons():
    """Collaborators are cached per process; rebuild them for every test."""
    factories = (
        runtime.get_credential_store,
        runtime.get_target_catalog,
        runtime.get_notifier,
        runtime.get_payment_gateway,
        runtime.get_lifecycle_engine,
        runtime.get_payment_reconciler,
    )
    for factory in factories:
        factory.cache_clear()
    yield
    for factory in factories:
        factory.cache_clear()
