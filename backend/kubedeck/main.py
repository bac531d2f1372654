import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .config import Settings, get_settings
from .core.bootstrap import bootstrap_file_clusters, initial_active_id
from .core.crypto import CredentialVault
from .core.file_config import FileConfig
from .core.logging import get_logger, setup_logging
from .core.request_context import request_id_var
from .exceptions import ConfigurationError, register_exception_handlers
from .routers import clusters
from .services.cluster_manager import ClusterManager
from .services.k8s import ClientFactory, ConnectionCache, HealthProber
from .store import create_store

logger = get_logger(__name__)


def build_vault(file_config: FileConfig) -> CredentialVault:
    key = file_config.server.encryption_key
    if key:
        return CredentialVault.from_setting(key)
    if file_config.database.enabled:
        raise ConfigurationError("server.encryptionKey is required when the database is enabled")
    logger.warning("no encryption key configured; using a random key, sealed credentials will not survive a restart")
    return CredentialVault.ephemeral()


def build_cluster_manager(settings: Settings, file_config: FileConfig) -> ClusterManager:
    """Wire store, vault, factory, cache and prober, then load file-declared clusters."""
    vault = build_vault(file_config)
    store = create_store(settings, file_config)
    factory = ClientFactory(probe_timeout=settings.probe_timeout_seconds)
    cache = ConnectionCache(store, vault, factory, probe_timeout=settings.probe_timeout_seconds)
    prober = HealthProber(
        cache,
        factory,
        interval=settings.health_probe_interval_seconds,
        timeout=settings.probe_timeout_seconds,
        max_workers=settings.health_probe_workers,
        initial_delay=settings.health_probe_initial_delay_seconds,
    )

    loaded_ids = bootstrap_file_clusters(file_config, store, vault, factory)
    active_id = initial_active_id(file_config, store, loaded_ids)
    logger.info("%d clusters from configuration file, active cluster: %s", len(loaded_ids), active_id or "none")

    return ClusterManager(
        store,
        vault,
        factory,
        cache,
        prober=prober,
        config_path=file_config.path,
        active_id=active_id,
    )


def create_app(cluster_manager: Optional[ClusterManager] = None) -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = cluster_manager
        if manager is None:
            logger.info("loading configuration from %s", settings.config_path)
            file_config = FileConfig.load(settings.config_path)
            manager = build_cluster_manager(settings, file_config)
        app.state.cluster_manager = manager
        manager.start()
        logger.info("%s %s started", settings.app_name, settings.app_version)

        yield

        logger.info("shutting down...")
        manager.shutdown()

    app = FastAPI(
        title="kubedeck Cluster Management API",
        description="Multi-cluster Kubernetes administration backend",
        version=settings.app_version,
        lifespan=lifespan,
    )

    # ============ request_id + success envelope ============
    @app.middleware("http")
    async def request_id_and_envelope(request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            # only successful JSON bodies are wrapped
            if response.status_code >= 400 or response.status_code == 204:
                return response
            if "application/json" not in response.headers.get("content-type", ""):
                return response

            body = b""
            async for chunk in response.body_iterator:
                body += chunk
            if not body:
                return response
            try:
                payload = json.loads(body)
            except ValueError:
                return Response(content=body, status_code=response.status_code, headers=dict(response.headers))

            if isinstance(payload, dict) and payload.get("success") is True and "request_id" in payload:
                wrapped = payload
            else:
                wrapped = {"success": True, "data": payload, "request_id": request_id}
            headers = dict(response.headers)
            headers.pop("content-length", None)
            return JSONResponse(status_code=response.status_code, content=wrapped, headers=headers)
        finally:
            logger.debug(
                "%s %s handled in %.1fms", request.method, request.url.path, (time.perf_counter() - start) * 1000
            )
            request_id_var.reset(token)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(clusters.router, prefix="/api/clusters", tags=["clusters"])

    @app.get("/health")
    def health():
        manager: Optional[ClusterManager] = getattr(app.state, "cluster_manager", None)
        return {
            "status": "ok",
            "version": settings.app_version,
            "active_cluster_id": manager.get_active_id() if manager else None,
            "pool": manager.cache.get_pool_stats() if manager else {},
        }

    return app


setup_logging()

app = create_app()
