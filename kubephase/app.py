"""Application bootstrap for kubephase.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → store → dynamic cache
              → controllers → REST

Shutdown is fully graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that a
single component failure does not prevent the rest from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

from kubephase.config import load_config
from kubephase.models.config import KubePhaseConfig
from kubephase.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from kubephase.cache import DynamicCache
    from kubephase.runtime import Controller
    from kubephase.store.kube import KubeStore

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class KubePhaseApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already stopped)
    is safe.
    """

    def __init__(self) -> None:
        self.config: KubePhaseConfig | None = None

        self._k8s_client: object | None = None
        self._store: KubeStore | None = None
        self._cache: DynamicCache | None = None
        self._controllers: list[Controller] = []
        self._rest_server: object | None = None

        # Background tasks that must be cancelled on shutdown
        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        The caller (main()) re-raises this as a non-zero exit.
        """
        # --- 1. Configuration -------------------------------------------
        self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("kubephase starting", version=_kubephase_version())

        # --- 3. Kubernetes client ----------------------------------------
        await self._start_k8s_client()

        # --- 4. Object store ---------------------------------------------
        await self._start_store()

        # --- 5. Dynamic cache --------------------------------------------
        await self._start_cache()

        # --- 6. Controllers ----------------------------------------------
        await self._start_controllers()

        # --- 7. REST API -------------------------------------------------
        await self._start_rest()

        self._running = True
        self._log.info("kubephase started", port=self.config.api.port)

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_k8s_client(self) -> None:
        """Initialise the kubernetes-asyncio client from in-cluster config or kubeconfig."""
        assert self._log is not None
        self._log.debug("starting k8s client")
        try:
            import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]

            try:
                # load_incluster_config() is synchronous in kubernetes-asyncio
                k8s_config.load_incluster_config()
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")

            self._k8s_client = True
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _start_store(self) -> None:
        """Connect the dynamic-client backed object store."""
        assert self._log is not None
        self._log.debug("starting object store")
        try:
            from kubephase.store.kube import KubeStore

            self._store = await KubeStore.connect()
            self._log.info("object store connected")
        except Exception as exc:
            raise _ComponentError("store", exc) from exc

    async def _start_cache(self) -> None:
        assert self._log is not None
        assert self._store is not None
        try:
            from kubephase.cache import DynamicCache

            self._cache = DynamicCache(self._store)
            self._log.info("dynamic cache started")
        except Exception as exc:
            raise _ComponentError("cache", exc) from exc

    async def _start_controllers(self) -> None:
        """Build the ObjectDeployment, ObjectSet and (optionally) SecretSync controllers."""
        assert self._log is not None
        assert self.config is not None
        assert self._store is not None
        assert self._cache is not None
        self._log.debug("starting controllers")
        try:
            from kubephase.deployments import DeploymentReconciler
            from kubephase.models.api import OBJECT_DEPLOYMENT_GVK, OBJECT_SET_GVK, SECRET_SYNC_GVK
            from kubephase.objectsets import ObjectSetReconciler
            from kubephase.runtime import Controller, owned_by
            from kubephase.secretsync import SecretSyncReconciler
            from kubephase.slices import SliceStore

            ctl = self.config.controller
            namespace = ctl.namespace or None
            slices = SliceStore(self._store)

            deployments = Controller(
                "objectdeployment",
                self._store,
                OBJECT_DEPLOYMENT_GVK,
                DeploymentReconciler(self._store, slices, self.config),
                namespace=namespace,
                workers=ctl.workers,
                max_backoff=ctl.max_backoff_seconds,
            ).watches(OBJECT_SET_GVK, owned_by(OBJECT_DEPLOYMENT_GVK))

            objectsets = Controller(
                "objectset",
                self._store,
                OBJECT_SET_GVK,
                ObjectSetReconciler(self._store, self._cache, slices),
                namespace=namespace,
                workers=ctl.workers,
                max_backoff=ctl.max_backoff_seconds,
            )
            self._cache.add_owner_handler(OBJECT_SET_GVK.group_kind, objectsets.enqueue)
            controllers = [deployments, objectsets]

            if self.config.secret_sync.enabled:
                secretsyncs = Controller(
                    "secretsync",
                    self._store,
                    SECRET_SYNC_GVK,
                    SecretSyncReconciler(
                        self._store,
                        self._cache,
                        default_poll_interval=float(self.config.secret_sync.default_poll_interval),
                    ),
                    namespace=namespace,
                    workers=ctl.workers,
                    max_backoff=ctl.max_backoff_seconds,
                )
                self._cache.add_owner_handler(SECRET_SYNC_GVK.group_kind, secretsyncs.enqueue)
                controllers.append(secretsyncs)

            for controller in controllers:
                await controller.start()
                self._controllers.append(controller)
            self._log.info("controllers started", controllers=[c.name for c in controllers])
        except Exception as exc:
            raise _ComponentError("controllers", exc) from exc

    async def _start_rest(self) -> None:
        """Start the uvicorn server for probes, metrics and the cache API."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting rest api")
        try:
            import uvicorn  # type: ignore[import-untyped]

            from kubephase.api import create_app

            fastapi_app = create_app(controllers=self._controllers, cache=self._cache)
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest api started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("kubephase shutting down")

        self._running = False

        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        self._rest_server = None
        for controller in reversed(self._controllers):
            await self._stop_component(controller.name, controller)
        self._controllers.clear()
        await self._stop_component("cache", self._cache)
        self._cache = None
        await self._stop_store()

        log.info("kubephase stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() on a component if it has that method, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component stop timed out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))

    async def _stop_store(self) -> None:
        """Close the kubernetes-asyncio ApiClient connection pool."""
        if self._store is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._store.close()
        except Exception as exc:
            log.debug("k8s client close raised (non-fatal)", error=str(exc))
        self._store = None


def _kubephase_version() -> str:
    from kubephase import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = KubePhaseApp()
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        while app._running:
            await asyncio.sleep(1)
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app._running:
            await app.stop()
