"""
Builds the escrow components from Settings once per process. Nothing below
the API layer reads the environment; values are handed in here.
"""
from dataclasses import dataclass, field
from typing import Optional

from escrow.core.auto_release import AutoReleaseScheduler
from escrow.core.dispute_gate import DisputeGate
from escrow.core.disputes import DisputeService
from escrow.core.escrow_service import EscrowService
from escrow.core.ingestion import CallbackIngestion
from escrow.core.state_machine import EscrowStateMachine
from escrow.notify.dispatcher import MemoryInbox, NotificationDispatcher, RedisInbox
from escrow.providers.paystack import PaystackAdapter
from escrow.providers.registry import ProviderRegistry
from escrow.providers.tradesafe import TradeSafeAdapter
from escrow.settings import settings as default_settings
from escrow.store.dispute_repo import DisputeRepo
from escrow.store.document_store import DocumentStore, MemoryDocumentStore, RedisDocumentStore
from escrow.store.engagement_repo import EngagementRepo
from escrow.store.intent_repo import IntentRepo
from escrow.store.redis_conn import get_redis


@dataclass
class HttpConfig:
    """What the route layer needs from Settings: page targets and shared secrets."""
    app_base_url: str = ""
    success_page_path: str = "/payment/success"
    error_page_path: str = "/payment/error"
    cron_secret: str = ""
    admin_api_key: str = ""

    def page_url(self, path: str) -> str:
        return f"{self.app_base_url.rstrip('/')}{path}"


@dataclass
class Components:
    store: DocumentStore
    registry: ProviderRegistry
    intents: IntentRepo
    engagements: EngagementRepo
    disputes_repo: DisputeRepo
    state_machine: EscrowStateMachine
    gate: DisputeGate
    dispatcher: NotificationDispatcher
    ingestion: CallbackIngestion
    escrow: EscrowService
    disputes: DisputeService
    scheduler: AutoReleaseScheduler
    http: HttpConfig = field(default_factory=HttpConfig)


def build_registry(cfg) -> ProviderRegistry:
    return ProviderRegistry(
        [
            PaystackAdapter(
                secret_key=cfg.PAYSTACK_SECRET_KEY,
                base_url=cfg.PAYSTACK_BASE_URL,
                currency=cfg.CURRENCY,
                verify_signatures=cfg.PAYSTACK_VERIFY_SIGNATURES,
                timeout_sec=cfg.PROVIDER_TIMEOUT_SEC,
            ),
            TradeSafeAdapter(
                client_id=cfg.TRADESAFE_CLIENT_ID,
                client_secret=cfg.TRADESAFE_CLIENT_SECRET,
                environment=cfg.TRADESAFE_ENVIRONMENT,
                days_to_deliver=cfg.TRADESAFE_DAYS_TO_DELIVER,
                days_to_inspect=cfg.TRADESAFE_DAYS_TO_INSPECT,
                verify_signatures=cfg.TRADESAFE_VERIFY_SIGNATURES,
                timeout_sec=cfg.PROVIDER_TIMEOUT_SEC,
            ),
        ],
        default=cfg.DEFAULT_PROVIDER,
    )


def build_components(
    cfg=None,
    store: Optional[DocumentStore] = None,
    registry: Optional[ProviderRegistry] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Components:
    cfg = cfg or default_settings
    use_redis = cfg.STORE_BACKEND == "redis"

    if store is None:
        store = RedisDocumentStore(get_redis()) if use_redis else MemoryDocumentStore()
    if registry is None:
        registry = build_registry(cfg)
    if dispatcher is None:
        inbox = RedisInbox(get_redis(), cfg.INBOX_MAX_ITEMS) if use_redis else MemoryInbox(cfg.INBOX_MAX_ITEMS)
        dispatcher = NotificationDispatcher(inbox, deliver_webhook=bool(cfg.NOTIFY_WEBHOOK_URL))

    intents = IntentRepo(store)
    engagements = EngagementRepo(store)
    disputes_repo = DisputeRepo(store)
    state_machine = EscrowStateMachine(intents)
    gate = DisputeGate(disputes_repo, engagements)
    ingestion = CallbackIngestion(registry, intents, state_machine, engagements, dispatcher,
                                  cas_retries=cfg.CALLBACK_CAS_RETRIES)
    return Components(
        store=store,
        registry=registry,
        intents=intents,
        engagements=engagements,
        disputes_repo=disputes_repo,
        state_machine=state_machine,
        gate=gate,
        dispatcher=dispatcher,
        ingestion=ingestion,
        escrow=EscrowService(registry, intents, state_machine, engagements, gate, dispatcher, ingestion,
                             base_url=cfg.APP_BASE_URL, intent_ttl_minutes=cfg.INTENT_TTL_MINUTES,
                             currency=cfg.CURRENCY),
        disputes=DisputeService(disputes_repo, intents, state_machine, engagements, registry, dispatcher),
        scheduler=AutoReleaseScheduler(intents, state_machine, gate, engagements, registry, dispatcher,
                                       grace_days=cfg.AUTO_RELEASE_GRACE_DAYS,
                                       batch_limit=cfg.AUTO_RELEASE_BATCH_LIMIT),
        http=HttpConfig(
            app_base_url=cfg.APP_BASE_URL,
            success_page_path=cfg.SUCCESS_PAGE_PATH,
            error_page_path=cfg.ERROR_PAGE_PATH,
            cron_secret=cfg.CRON_SECRET,
            admin_api_key=cfg.ADMIN_API_KEY,
        ),
    )


_components: Optional[Components] = None


def get_components() -> Components:
    """FastAPI dependency; tests swap it through app.dependency_overrides."""
    global _components
    if _components is None:
        _components = build_components()
    return _components
