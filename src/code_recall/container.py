"""Dependency injection container.

Shares per-project resources (chunk store, search engine, indexer, cache)
across callers. Lazy: nothing is opened until first use. Configurable: call
configure() to override default settings (e.g. in tests).
"""

from pathlib import Path

import structlog

from code_recall.cache.semantic import SemanticCache
from code_recall.config import Settings, get_index_path, get_settings
from code_recall.indexer.incremental import IncrementalIndexer
from code_recall.logging import configure_logging
from code_recall.profiling import configure_profiling
from code_recall.protocols import ChunkerProtocol, EmbedderProtocol
from code_recall.search.hybrid import HybridSearchEngine
from code_recall.services.index_service import IndexService
from code_recall.storage.lancedb import LanceDBChunkStore

log = structlog.get_logger()


class Container:
    """Caches long-lived per-project objects, creates services per request.

    Caching strategy:
    - Chunk store: per-project (open DB handle)
    - Search engine: per-project (owns the keyword index and stats)
    - Incremental indexer: per-project (holds the last loaded metadata)
    - Semantic cache: per-project, persisted on close() when enabled
    - Index service: created fresh (cheap, stateless)
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._stores: dict[str, LanceDBChunkStore] = {}
        self._engines: dict[str, HybridSearchEngine] = {}
        self._indexers: dict[str, IncrementalIndexer] = {}
        self._caches: dict[str, SemanticCache] = {}

    def _key(self, project_path: Path) -> str:
        return str(get_index_path(self.settings, project_path.resolve()))

    def get_store(self, project_path: Path) -> LanceDBChunkStore:
        """Get or create an initialized chunk store for a project."""
        key = self._key(project_path)
        if key not in self._stores:
            store = LanceDBChunkStore.from_settings(self.settings, Path(key))
            store.initialize()
            self._stores[key] = store
        return self._stores[key]

    def get_search_engine(self, project_path: Path) -> HybridSearchEngine:
        """Get or create the hybrid search engine over a project's store."""
        key = self._key(project_path)
        if key not in self._engines:
            self._engines[key] = HybridSearchEngine(
                self.get_store(project_path), settings=self.settings
            )
        return self._engines[key]

    def get_indexer(self, project_path: Path) -> IncrementalIndexer:
        key = self._key(project_path)
        if key not in self._indexers:
            self._indexers[key] = IncrementalIndexer(self.settings, project_path)
        return self._indexers[key]

    def get_cache(
        self, project_path: Path, embedder: EmbedderProtocol | None = None
    ) -> SemanticCache:
        """Get or create the semantic cache, loading persisted entries if enabled."""
        key = self._key(project_path)
        if key not in self._caches:
            cache = SemanticCache.from_settings(self.settings, embedder=embedder)
            if self.settings.cache_persist:
                cache.load(Path(key) / self.settings.semantic_cache_filename)
            self._caches[key] = cache
        return self._caches[key]

    def create_index_service(
        self, project_path: Path, chunker: ChunkerProtocol, embedder: EmbedderProtocol
    ) -> IndexService:
        """Create an IndexService wired to the project's shared resources."""
        return IndexService(
            settings=self.settings,
            indexer=self.get_indexer(project_path),
            store=self.get_store(project_path),
            engine=self.get_search_engine(project_path),
            chunker=chunker,
            embedder=embedder,
        )

    def close(self) -> None:
        """Persist caches (when enabled) and close every store."""
        if self.settings.cache_persist:
            for key, cache in self._caches.items():
                cache.save(Path(key) / self.settings.semantic_cache_filename)
        for store in self._stores.values():
            store.close()
        log.debug("container_closed", stores=len(self._stores), caches=len(self._caches))
        self._stores.clear()
        self._engines.clear()
        self._indexers.clear()
        self._caches.clear()


# --- Global container lifecycle ---

_container: Container | None = None


def _create(settings: Settings) -> Container:
    configure_logging(debug=settings.debug)
    configure_profiling(
        settings.profile, settings.cache_dir / "profiles", settings.profile_threshold_ms
    )
    return Container(settings)


def configure(settings: Settings) -> Container:
    """Initialize the global container with explicit settings (e.g. tests)."""
    global _container
    if _container is not None:
        _container.close()
    _container = _create(settings)
    return _container


def get_container() -> Container:
    """Get the global container, auto-configuring with default Settings if needed."""
    global _container
    if _container is None:
        _container = _create(get_settings())
    return _container
