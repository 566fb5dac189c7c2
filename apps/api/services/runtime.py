"""Process-wide collaborators, exposed as FastAPI dependencies."""

from functools import lru_cache

from config import is_paid_mode, settings
from services.catalog import FileTargetCatalog, TargetCatalog
from services.credential_store import CredentialStore, build_credential_store
from services.lifecycle import LifecycleEngine
from services.notifier import LoggingNotifier, Notifier
from services.payment_gateway import PakasirGateway, build_payment_gateway
from services.payments import PaymentReconciler


@lru_cache(maxsize=1)
def get_credential_store() -> CredentialStore:
    return build_credential_store()


@lru_cache(maxsize=1)
def get_target_catalog() -> TargetCatalog:
    return FileTargetCatalog(settings.TARGETS_CONFIG_PATH)


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    return LoggingNotifier()


@lru_cache(maxsize=1)
def get_payment_gateway() -> PakasirGateway:
    return build_payment_gateway()


@lru_cache(maxsize=1)
def get_lifecycle_engine() -> LifecycleEngine:
    return LifecycleEngine(
        credential_store=get_credential_store(),
        catalog=get_target_catalog(),
        paid_mode=is_paid_mode(),
        package_days=settings.PACKAGE_DAYS,
        trial_hours=settings.TRIAL_HOURS,
    )


@lru_cache(maxsize=1)
def get_payment_reconciler() -> PaymentReconciler:
    return PaymentReconciler(
        gateway=get_payment_gateway(),
        notifier=get_notifier(),
        min_amount=settings.TOPUP_MIN,
    )
