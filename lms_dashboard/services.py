"""
Explicit construction of the service graph.

One graph per process (the web app) or per test; nothing here is a
module-level singleton.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from config.settings import Settings, settings as default_settings
from lms_dashboard.api_client import LMSClient
from lms_dashboard.cache import CacheManager, KeyValueStore, MemoryStore, SQLStore
from lms_dashboard.directory import UserDirectory
from lms_dashboard.orchestrator import DataOrchestrator, LoadMonitor
from lms_dashboard.request_queue import RequestQueue
from lms_dashboard.roles import build_cascade

logger = logging.getLogger("services")


@dataclass
class DashboardServices:
    config: Settings
    client: LMSClient
    cache: CacheManager
    feature_queue: RequestQueue
    directory_queue: RequestQueue
    orchestrator: DataOrchestrator
    directory: UserDirectory

    def shutdown(self) -> None:
        self.orchestrator.shutdown()
        self.directory_queue.shutdown()
        self.client.close()


def build_services(
    config: Optional[Settings] = None,
    client: Optional[LMSClient] = None,
    store: Optional[KeyValueStore] = None,
    session_store: Optional[KeyValueStore] = None,
) -> DashboardServices:
    """
    Wire client, cache, queues, orchestrator and directory together.

    Args:
        config: Settings; defaults to the environment-loaded settings
        client: LMS client (tests pass a fake)
        store: Persistent store; defaults to SQLStore at cache_database_url
        session_store: Session-tier store; defaults to a MemoryStore
    """
    config = config or default_settings
    client = client or LMSClient(config)
    if store is None:
        store = SQLStore(config.cache_database_url)

    cache = CacheManager(
        store=store,
        session_store=session_store or MemoryStore(),
        enabled=config.cache_enabled,
    )
    pacing = config.queue_pacing_ms / 1000
    feature_queue = RequestQueue(
        batch_size=config.queue_batch_size,
        pacing_delay=pacing,
        name="feature-queue",
    )
    directory_queue = RequestQueue(
        batch_size=config.directory_batch_size,
        pacing_delay=pacing,
        name="directory-queue",
    )
    rules = build_cascade(
        use_enrollment=config.role_enrollment_inference,
        use_inactivity=config.role_inactivity_inference,
        inactivity_window=timedelta(days=config.role_inactivity_days),
    )
    orchestrator = DataOrchestrator(
        client,
        cache,
        feature_queue,
        monitor=LoadMonitor(),
        role_rules=rules,
        refresh_workers=config.refresh_workers,
        dashboard_course_limit=config.dashboard_course_limit,
    )
    directory = UserDirectory(client, orchestrator, directory_queue, role_rules=rules)

    logger.info(
        f"Services ready (batch={config.queue_batch_size}, "
        f"directory batch={config.directory_batch_size}, "
        f"cache={'on' if config.cache_enabled else 'off'})"
    )
    return DashboardServices(
        config=config,
        client=client,
        cache=cache,
        feature_queue=feature_queue,
        directory_queue=directory_queue,
        orchestrator=orchestrator,
        directory=directory,
    )
