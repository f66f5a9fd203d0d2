import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError

from .cache import CacheStorage
from .capture import OfflineCapture
from .delivery import SubmissionSender
from .errors import StoreUnavailable, TransactionError
from .notifications import MemoryNotifier, handle_push
from .reconcile import BackgroundReconciler
from .router import ResponseRouter, RoutedRequest, RouterConfig
from .schemas import CaptureResult, Notification, StoredRecord, SubmissionRequest, SyncReport
from .settings import Settings, settings as default_settings
from .store import CACHED_QUESTION_PAPERS, CACHED_SUBMISSIONS, PENDING_SUBMISSIONS, LocalStore
from .sync import SUBMIT_ANSWER_TAG, ConnectivityMonitor, SyncManager

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@dataclass
class Runtime:
    settings: Settings
    store: LocalStore
    caches: CacheStorage
    sync: SyncManager
    notifier: MemoryNotifier
    sender: SubmissionSender
    capture: OfflineCapture
    reconciler: BackgroundReconciler
    router: ResponseRouter
    monitor: Optional[ConnectivityMonitor]

    async def start(self) -> None:
        try:
            await self.store.open()
            await self.sync.load()
        except StoreUnavailable as e:
            logger.error("Offline storage disabled, submissions need a live connection: %s", e)
        self.sync.on(SUBMIT_ANSWER_TAG, self.reconciler.handle_sync)

        try:
            await self.router.install()
            await self.router.activate()
        except (httpx.HTTPError, SQLAlchemyError) as e:
            logger.warning("App shell not cached, offline navigation will fail: %s", e)

        if self.monitor is not None:
            self.monitor.start()

    async def stop(self) -> None:
        if self.monitor is not None:
            await self.monitor.stop()
        await self.router.aclose()
        self.store.close()


def build_runtime(s: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Runtime:
    store = LocalStore.from_url(
        s.database_url, open_retries=s.store_open_retries, open_backoff_seconds=s.store_open_backoff_seconds
    )
    caches = CacheStorage(store.engine)
    sync = SyncManager(store.engine)
    notifier = MemoryNotifier()
    sender = SubmissionSender(s.submission_url, timeout=s.request_timeout_seconds, transport=transport)
    monitor = None
    if s.connectivity_monitor:
        monitor = ConnectivityMonitor(
            s.health_url, sync, interval_seconds=s.connectivity_interval_seconds, transport=transport
        )
    return Runtime(
        settings=s,
        store=store,
        caches=caches,
        sync=sync,
        notifier=notifier,
        sender=sender,
        capture=OfflineCapture(store, sender, sync),
        reconciler=BackgroundReconciler(store, sender, notifier, sync),
        router=ResponseRouter(
            RouterConfig.from_settings(s), caches, store, timeout=s.request_timeout_seconds, transport=transport
        ),
        monitor=monitor,
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def create_app(s: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    runtime = build_runtime(s or default_settings, transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title="ExamShare Offline Proxy", version="1.0.0", lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(StoreUnavailable)
    async def _store_unavailable(request: Request, exc: StoreUnavailable):
        return JSONResponse({"detail": f"Offline storage unavailable: {exc}"}, status_code=503)

    @app.exception_handler(TransactionError)
    async def _transaction_error(request: Request, exc: TransactionError):
        return JSONResponse({"detail": f"Offline storage error: {exc}"}, status_code=500)

    @app.exception_handler(httpx.TransportError)
    async def _upstream_error(request: Request, exc: httpx.TransportError):
        return JSONResponse({"detail": f"Upstream unreachable: {exc}"}, status_code=502)

    @app.get("/_offline/healthz")
    def healthz(rt: Runtime = Depends(get_runtime)):
        return {
            "status": "ok",
            "store": rt.store.is_open,
            "online": rt.monitor.is_online if rt.monitor else None,
            "pendingSync": rt.sync.pending_tags,
        }

    @app.post("/_offline/submissions", response_model=CaptureResult)
    async def submit(body: SubmissionRequest, rt: Runtime = Depends(get_runtime)):
        result = await rt.capture.capture(body)
        if result.delivered:
            status_code = 201
        elif result.queued:
            status_code = 202
        else:
            status_code = result.status_code or 502
        return JSONResponse(result.model_dump(mode="json", by_alias=True), status_code=status_code)

    @app.get("/_offline/pending", response_model=List[StoredRecord])
    async def list_pending(rt: Runtime = Depends(get_runtime)):
        return await rt.store.get_all(PENDING_SUBMISSIONS)

    @app.delete("/_offline/pending/{record_id}", status_code=204)
    async def drop_pending(record_id: int, rt: Runtime = Depends(get_runtime)):
        await rt.store.delete(PENDING_SUBMISSIONS, record_id)
        return Response(status_code=204)

    @app.post("/_offline/sync/{tag}", response_model=SyncReport)
    async def trigger_sync(tag: str, rt: Runtime = Depends(get_runtime)):
        report = await rt.sync.fire(tag)
        if report is None:
            raise HTTPException(status_code=404, detail=f"No sync handler for tag '{tag}'")
        return report

    @app.get("/_offline/cached/{partition}", response_model=List[StoredRecord])
    async def list_cached(partition: str, rt: Runtime = Depends(get_runtime)):
        if partition not in (CACHED_QUESTION_PAPERS, CACHED_SUBMISSIONS):
            raise HTTPException(status_code=404, detail="Not found")
        return await rt.store.get_all(partition)

    @app.get("/_offline/notifications", response_model=List[Notification])
    def list_notifications(rt: Runtime = Depends(get_runtime)):
        return rt.notifier.items

    @app.post("/_offline/push", status_code=202)
    async def push(request: Request, rt: Runtime = Depends(get_runtime)):
        notification = handle_push(await request.body(), rt.notifier)
        return {"shown": notification is not None}

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(path: str, request: Request, rt: Runtime = Depends(get_runtime)):
        url = rt.router.config.absolute(request.url.path)
        if request.url.query:
            url += "?" + request.url.query
        routed = RoutedRequest(
            method=request.method,
            url=url,
            headers=dict(request.headers),
            body=await request.body(),
        )
        response = await rt.router.handle(routed)
        return Response(content=response.body, status_code=response.status, headers=response.headers)

    return app


app = create_app()
