"""Process entry point: wires the services, runs the dispatcher and the HTTP ingress."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from .billing import BillingCoordinator
from .catalog import build_registry
from .commands import CommandRouter
from .config import Settings, ensure_directories, load_settings
from .courier import ArtifactCourier
from .errors import ConfigError
from .ledger import BalanceLedger
from .logs import log_event, setup_logging
from .pipeline import JobPipeline
from .queue_client import InferenceQueueClient
from .rates import RateOracle
from .schemas import IncomingMessage, Job, TipReceived
from .transport import ChatTransport, HTTPBridgeTransport
from .webhook import AIWebhook

BUSY_MESSAGE = "The bot is busy right now, please try again in a moment."


@dataclass
class ActiveJob:
    user_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    job: Optional[Job] = None


class Dispatcher:
    """Runs generation commands on a worker pool, one thread per job.

    Info commands are answered inline. A bounded semaphore caps concurrent
    jobs; each job has its own cancel event so ``!cancel`` and shutdown can
    stop it.
    """

    def __init__(self, router: CommandRouter, transport: ChatTransport, max_jobs: int = 64, max_jobs_per_user: int = 0) -> None:
        self.router = router
        self.transport = transport
        self.max_jobs_per_user = max_jobs_per_user
        self._slots = threading.BoundedSemaphore(max_jobs)
        self._executor = ThreadPoolExecutor(max_workers=max_jobs, thread_name_prefix="inferbot-job")
        self._active: Dict[int, ActiveJob] = {}
        self._lock = threading.Lock()
        self._ids = iter(range(1, 2**62))
        self._closed = False
        router.cancel_jobs = self.cancel_user

    def dispatch(self, msg: IncomingMessage) -> Optional[Future]:
        if not self.router.is_generation(msg):
            self.router.handle(msg)
            return None
        refusal = None
        with self._lock:
            if self._closed:
                refusal = BUSY_MESSAGE
            elif self.max_jobs_per_user and self._count(msg.sender_id) >= self.max_jobs_per_user:
                refusal = f"You already have {self.max_jobs_per_user} job(s) running."
            elif not self._slots.acquire(blocking=False):
                refusal = BUSY_MESSAGE
            else:
                key = next(self._ids)
                entry = self._active[key] = ActiveJob(user_id=msg.sender_id)
        if refusal is not None:
            self.transport.send_text(msg.reply_to, refusal)
            return None
        try:
            return self._executor.submit(self._run, key, entry, msg)
        except RuntimeError:
            self._release(key)
            raise

    def _run(self, key: int, entry: ActiveJob, msg: IncomingMessage) -> Optional[Job]:
        def remember(job: Job) -> None:
            entry.job = job

        try:
            return self.router.handle(msg, entry.cancel_event, remember)
        except Exception as exc:
            log_event("Job worker crashed", level="error", user_id=msg.sender_id, error=repr(exc))
            raise
        finally:
            self._release(key)

    def _release(self, key: int) -> None:
        with self._lock:
            self._active.pop(key, None)
        self._slots.release()

    def _count(self, user_id: str) -> int:
        return sum(1 for entry in self._active.values() if entry.user_id == user_id)

    def credit_tip(self, tip: TipReceived) -> int:
        return self.router.handle_tip(tip)

    def cancel_user(self, user_id: str) -> int:
        with self._lock:
            entries = [entry for entry in self._active.values() if entry.user_id == user_id]
        for entry in entries:
            entry.cancel_event.set()
        if entries:
            log_event("Jobs canceled by user", user_id=user_id, count=len(entries))
        return len(entries)

    def active_jobs(self) -> List[Dict[str, Any]]:
        with self._lock:
            entries = list(self._active.values())
        return [entry.job.summary() if entry.job else {"user_id": entry.user_id, "state": "starting"} for entry in entries]

    def shutdown(self, wait: bool = True) -> None:
        """Cancel every running job; each one refunds itself on the way out."""

        with self._lock:
            self._closed = True
            entries = list(self._active.values())
        for entry in entries:
            entry.cancel_event.set()
        log_event("Dispatcher shutting down", active=len(entries))
        self._executor.shutdown(wait=wait)


# ---------------------------------------------------------------------------
# HTTP ingress
# ---------------------------------------------------------------------------


def create_app(dispatcher: Dispatcher, cors_origins: str = "") -> Flask:
    app = Flask(__name__)
    origins = [origin.strip() for origin in cors_origins.split(",") if origin.strip()]
    if origins and origins != ["*"]:
        CORS(app, resources={r"/healthz": {"origins": origins}, r"/jobs": {"origins": origins}})
    elif origins:
        CORS(app)

    @app.route("/messages", methods=["POST"])
    def receive_message() -> Any:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({"error": "invalid_json"}), 400
        try:
            msg = IncomingMessage.from_dict(payload)
        except ValueError as exc:
            return jsonify({"error": "invalid_message", "message": str(exc)}), 400
        future = dispatcher.dispatch(msg)
        return jsonify({"accepted": True, "job": future is not None}), 202

    @app.route("/tips", methods=["POST"])
    def receive_tip() -> Any:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({"error": "invalid_json"}), 400
        try:
            tip = TipReceived.from_dict(payload)
        except (TypeError, ValueError) as exc:
            return jsonify({"error": "invalid_tip", "message": str(exc)}), 400
        balance = dispatcher.credit_tip(tip)
        return jsonify({"credited": tip.atoms, "balance": balance})

    @app.route("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "active_jobs": len(dispatcher.active_jobs())})

    @app.route("/jobs")
    def jobs() -> Any:
        return jsonify({"jobs": dispatcher.active_jobs()})

    return app


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class Services:
    settings: Settings
    ledger: BalanceLedger
    oracle: RateOracle
    billing: BillingCoordinator
    transport: ChatTransport
    router: CommandRouter
    dispatcher: Dispatcher


def build_services(settings: Settings, transport: Optional[ChatTransport] = None) -> Services:
    registry = build_registry()
    ledger = BalanceLedger(settings.db_path)
    oracle = RateOracle(
        source_url=settings.rate_source_url,
        coin_id=settings.rate_coin_id,
        ttl=settings.rate_ttl_seconds,
        atoms_per_unit=settings.atoms_per_unit,
    )
    billing = BillingCoordinator(ledger, oracle, enabled=settings.billing_enabled)
    transport = transport or HTTPBridgeTransport(settings.bridge_url, settings.bridge_token)
    queue = InferenceQueueClient(
        settings.fal_api_key,
        base_url=settings.fal_base_url,
        poll_interval=settings.poll_interval,
        timeout_seconds=settings.job_timeout_seconds,
    )
    courier = ArtifactCourier(transport, inline_limit=settings.inline_image_limit)
    pipeline = JobPipeline(
        registry, billing, queue, courier, transport,
        atoms_per_unit=settings.atoms_per_unit,
        rate_unit=settings.rate_unit,
    )
    webhook = AIWebhook(settings.webhook_url, settings.webhook_api_key) if settings.webhook_enabled else None
    router = CommandRouter(
        registry, pipeline, billing, oracle, transport,
        webhook=webhook,
        atoms_per_unit=settings.atoms_per_unit,
        rate_unit=settings.rate_unit,
    )
    dispatcher = Dispatcher(router, transport, settings.max_concurrent_jobs, settings.max_jobs_per_user)
    if isinstance(transport, HTTPBridgeTransport):
        transport.on_tip = dispatcher.credit_tip
    return Services(settings, ledger, oracle, billing, transport, router, dispatcher)


def receive_loop(services: Services) -> None:
    for msg in services.transport.receive_stream():
        try:
            services.dispatcher.dispatch(msg)
        except Exception as exc:
            log_event("Dispatch failed", level="error", user_id=msg.sender_id, error=repr(exc))


def main() -> None:
    try:
        settings = load_settings()
    except ConfigError as exc:
        raise SystemExit(f"inferbot: {exc}")
    ensure_directories(settings)
    setup_logging(settings.log_dir, settings.debug)
    services = build_services(settings)
    log_event(
        "Inferbot starting",
        billing_enabled=settings.billing_enabled,
        webhook_enabled=settings.webhook_enabled,
        listen=f"{settings.listen_host}:{settings.listen_port}",
    )
    if settings.bridge_poll:
        threading.Thread(target=receive_loop, args=(services,), name="inferbot-receive", daemon=True).start()
    app = create_app(services.dispatcher, settings.cors_origins)
    try:
        app.run(host=settings.listen_host, port=settings.listen_port, threaded=True)
    finally:
        if isinstance(services.transport, HTTPBridgeTransport):
            services.transport.stop()
        services.dispatcher.shutdown(wait=True)
        services.ledger.close()


if __name__ == "__main__":
    main()
