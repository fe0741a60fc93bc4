#!/usr/bin/env python3
"""
Knowledge Server
Consolidates coding-assistant sessions into a self-curating knowledge graph
and serves decay-weighted retrieval over it.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
import uvicorn

from app.routers.knowledge import router as knowledge_router
from config.settings import Settings, settings, validate_settings
from modules.activation.activation_engine import ActivationEngine
from modules.consolidation.background import BackgroundConsolidation
from modules.consolidation.consolidation_engine import ConsolidationEngine
from modules.consolidation.decay import DecayEngine
from modules.consolidation.run_lock import ConsolidationLock
from modules.embedding.embedding_client import EmbeddingClient
from modules.episodes.episode_reader import EpisodeReader
from modules.knowledge.knowledge_store import KnowledgeStore
from modules.llm.consolidation_llm import ConsolidationLLM
from modules.llm.llm_client import LLMClient
from utils.exceptions import ConfigurationError
from utils.logging_utils import setup_logging

logger = logging.getLogger(__name__)


def create_app(cfg: Optional[Settings] = None) -> FastAPI:
    cfg = cfg or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Validate config, wire services, start the backlog loop; on exit stop it before closing the store."""
        setup_logging(cfg.server.log_level, cfg.server.log_path)

        problems = validate_settings(cfg)
        if problems:
            raise ConfigurationError(problems)

        store = KnowledgeStore(cfg.server.db_path)
        episode_reader = EpisodeReader(
            cfg.episodes.db_path,
            min_session_messages=cfg.consolidation.min_session_messages,
            max_tokens_per_episode=cfg.consolidation.max_tokens_per_episode,
        )
        llm_client = LLMClient(cfg.llm)
        embeddings = EmbeddingClient(cfg.embedding, cfg.llm)
        activation = ActivationEngine(store, embeddings, cfg.activation, cfg.decay)
        consolidation = ConsolidationEngine(
            store,
            episode_reader,
            ConsolidationLLM(llm_client, cfg.llm),
            embeddings,
            activation,
            config=cfg.consolidation,
            decay=DecayEngine(store, cfg.decay),
        )
        run_lock = ConsolidationLock()

        app.state.store = store
        app.state.activation = activation
        app.state.consolidation = consolidation
        app.state.run_lock = run_lock
        app.state.admin_token = cfg.server.admin_token

        if not cfg.server.admin_token:
            logger.warning("KNOWLEDGE_ADMIN_TOKEN not set: /consolidate and /reinitialize are disabled")

        background = BackgroundConsolidation(consolidation, run_lock, cfg.consolidation)
        pending = consolidation.check_pending()
        if pending["pendingSessions"]:
            logger.info(f"[consolidation] {pending['pendingSessions']} sessions pending, consolidating in background")
            background.start()

        logger.info(f"Knowledge server ready on {cfg.server.host}:{cfg.server.port} "
                    f"({store.count_live_entries()} live entries)")
        try:
            yield
        finally:
            logger.info("Shutting down knowledge server...")
            await background.shutdown(cfg.consolidation.shutdown_grace_seconds)
            await llm_client.close()
            await embeddings.close()
            episode_reader.close()
            store.close()

    app = FastAPI(
        title="Knowledge Server",
        description="Consolidated knowledge graph with decay-weighted retrieval",
        lifespan=lifespan,
    )
    app.include_router(knowledge_router)
    return app


if __name__ == "__main__":
    problems = validate_settings(settings)
    if problems:
        print(ConfigurationError(problems), file=sys.stderr)
        sys.exit(1)

    uvicorn.run(
        create_app(),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,
    )
