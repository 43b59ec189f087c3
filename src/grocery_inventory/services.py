"""Service container shared by the HTTP app and the CLI."""

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from .agent import AgentRunner, OpenAIIngestAgent, UnavailableAgentRunner
from .blob_storage import LocalBlobStorage
from .config import ConfigManager
from .document_store import BackendType, BaseDocumentStore, create_document_store
from .grocery_parser import GroceryParser
from .ingestion_jobs import IngestionJobService
from .inventory_engine import InventoryUpdateEngine
from .metrics import MetricsAggregator, MetricsRecorder
from .paths import AGENT_INTERACTIONS, INGESTION_JOBS_PATTERN, UPLOAD_BLOB_PATTERN, UPLOAD_JOBS_PATTERN
from .pipeline import IngestionPipeline
from .uploads import UploadService

logger = logging.getLogger(__name__)


class TokenVerifier(Protocol):
    """Maps a bearer token to an owner id."""

    def verify(self, token: str) -> str | None: ...


class StaticTokenVerifier:
    """Token verifier backed by the ``[auth.tokens]`` config table."""

    def __init__(self, tokens: dict[str, str]):
        self._tokens = dict(tokens)

    def verify(self, token: str) -> str | None:
        if not token:
            return None
        return self._tokens.get(token)


@dataclass
class Services:
    """Everything an entry point needs, built once."""

    config: ConfigManager
    store: BaseDocumentStore
    blob_storage: LocalBlobStorage
    parser_factory: Callable[[], GroceryParser]
    engine: InventoryUpdateEngine
    agent_runner: AgentRunner
    metrics_recorder: MetricsRecorder
    metrics_aggregator: MetricsAggregator
    pipeline: IngestionPipeline
    ingestion_jobs: IngestionJobService
    uploads: UploadService
    token_verifier: TokenVerifier
    trigger_executor: ThreadPoolExecutor | None = None

    def start_background_triggers(self, max_workers: int | None = None) -> None:
        """Move trigger handlers off the writing thread onto a worker pool."""
        if self.trigger_executor is not None:
            return
        workers = max_workers or self.config.ingestion.trigger_workers
        self.trigger_executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="grocery-triggers"
        )
        self.store.use_executor(self.trigger_executor)
        logger.info("Running triggers on %d background workers", workers)

    def shutdown(self) -> None:
        """Finish queued trigger work and stop the worker pool."""
        if self.trigger_executor is None:
            return
        self.store.wait_for_triggers()
        self.store.use_executor(None)
        self.trigger_executor.shutdown(wait=True)
        self.trigger_executor = None


def build_services(
    config: ConfigManager | None = None,
    data_dir: Path | None = None,
    store: BaseDocumentStore | None = None,
    blob_storage: LocalBlobStorage | None = None,
    agent_runner: AgentRunner | None = None,
    llm_client: Any = None,
    token_verifier: TokenVerifier | None = None,
    background_triggers: bool | None = None,
) -> Services:
    """Build and wire all services.

    Args:
        config: Loaded configuration; searched for in standard locations if omitted
        data_dir: Overrides ``data.storage_dir``
        store: Pre-built document store (defaults to the configured backend)
        blob_storage: Pre-built blob storage (defaults to files under the data dir)
        agent_runner: Agent to use instead of the OpenAI agent
        llm_client: OpenAI-compatible client shared by the parser and agent
        token_verifier: Verifier to use instead of the config token table
        background_triggers: Overrides ``ingestion.background_triggers``

    Returns:
        The wired service container, with triggers registered unless
        ``ingestion.run_triggers`` is off
    """
    config = config or ConfigManager()
    storage_dir = data_dir or config.data.storage_dir

    if store is None:
        store = create_document_store(backend=BackendType(config.data.backend), data_dir=storage_dir)
    if blob_storage is None:
        blob_storage = LocalBlobStorage(
            root=storage_dir / "blobs",
            bucket=config.uploads.bucket,
            signing_key=config.get_secret("UPLOAD_SIGNING_KEY") or config.uploads.signing_key,
            base_url=config.uploads.base_url,
        )

    api_key = config.openai_api_key
    llm = config.llm

    def parser_factory() -> GroceryParser:
        return GroceryParser(
            api_key=api_key, client=llm_client, model=llm.model, vision_model=llm.vision_model
        )

    engine = InventoryUpdateEngine(store, audit_limits=config.audit)

    if agent_runner is None:
        if llm_client is not None or api_key:
            agent_runner = OpenAIIngestAgent(
                engine,
                parser_factory,
                api_key=api_key,
                client=llm_client,
                model=llm.agent_model,
                max_turns=llm.agent_max_turns,
            )
        else:
            agent_runner = UnavailableAgentRunner()

    metrics_recorder = MetricsRecorder(store)
    metrics_aggregator = MetricsAggregator(store)
    pipeline = IngestionPipeline(agent_runner, parser_factory, engine, metrics_recorder)
    ingestion_jobs = IngestionJobService(
        store, pipeline, max_text_chars=config.ingestion.max_text_chars
    )
    uploads = UploadService(
        store,
        blob_storage,
        ingestion_jobs,
        parser_factory,
        max_bytes=config.uploads.max_bytes,
        url_expiry_seconds=config.uploads.url_expiry_seconds,
    )
    ingestion_jobs.resolve_upload_text = uploads.extract_upload_text

    if config.ingestion.run_triggers:
        store.on_create(INGESTION_JOBS_PATTERN, ingestion_jobs.process_job)
        store.on_create(UPLOAD_JOBS_PATTERN, uploads.process_upload_job)
        store.on_create(AGENT_INTERACTIONS, metrics_aggregator.on_interaction_created)
        blob_storage.on_finalize(UPLOAD_BLOB_PATTERN, uploads.handle_storage_finalized)
        logger.debug("Registered document and storage triggers")

    services = Services(
        config=config,
        store=store,
        blob_storage=blob_storage,
        parser_factory=parser_factory,
        engine=engine,
        agent_runner=agent_runner,
        metrics_recorder=metrics_recorder,
        metrics_aggregator=metrics_aggregator,
        pipeline=pipeline,
        ingestion_jobs=ingestion_jobs,
        uploads=uploads,
        token_verifier=token_verifier or StaticTokenVerifier(config.auth_tokens),
    )

    if background_triggers is None:
        background_triggers = config.ingestion.background_triggers
    if config.ingestion.run_triggers and background_triggers:
        services.start_background_triggers()
    return services
