# marketplace/main.py
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from flask import Flask, g, jsonify, request
from sqlalchemy.orm import Session

from marketplace.config import Config
from marketplace.database import SessionLocal, close_db, engine, init_database
from marketplace.blueprints.settlement import settlement_bp
from marketplace.observability import (
    check_database_health,
    check_settlement_tables,
    configure_logging,
    ensure_request_id,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from marketplace.services import (
    InventoryLedger,
    NotificationService,
    OrderService,
    PayoutService,
    RewardService,
    SettingsService,
)
from marketplace.settings import RewardSettings

logger = logging.getLogger(__name__)


@dataclass
class MarketplaceServices:
    """Service instances shared by every request of one app."""

    settings: RewardSettings
    notifications: NotificationService
    inventory: InventoryLedger
    rewards: RewardService
    orders: OrderService
    payouts: PayoutService
    platform_settings: SettingsService


def build_services(settings: RewardSettings, config: type[Config] = Config) -> MarketplaceServices:
    notifications = NotificationService()
    inventory = InventoryLedger()
    rewards = RewardService(settings, notifier=notifications)
    return MarketplaceServices(
        settings=settings,
        notifications=notifications,
        inventory=inventory,
        rewards=rewards,
        orders=OrderService(inventory, rewards, config=config),
        payouts=PayoutService(settings, notifier=notifications, config=config),
        platform_settings=SettingsService(base=settings),
    )


def create_app(
    config: type[Config] = Config,
    session_factory: Optional[Callable[[], Session]] = None,
    settings: Optional[RewardSettings] = None,
) -> Flask:
    app = Flask(__name__)
    config.configure_app(app)
    configure_logging(app, config)

    factory = session_factory or SessionLocal
    bind = getattr(factory, "kw", {}).get("bind") or engine
    init_database(bind)
    app.extensions["marketplace_session_factory"] = factory
    app.extensions["marketplace_engine"] = bind
    app.extensions["marketplace"] = build_services(settings or RewardSettings.from_config(config), config)

    app.register_blueprint(settlement_bp)

    @app.before_request
    def before_request_logging():
        g.request_started_at = time.perf_counter()
        g.request_id = ensure_request_id()
        increment_counter(
            "http_requests_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
            },
        )

    @app.after_request
    def after_request_logging(response):
        started = getattr(g, "request_started_at", None)
        if started is not None:
            duration_ms = (time.perf_counter() - started) * 1000
            observe_latency(
                "http_request_latency_ms",
                duration_ms,
                labels={
                    "method": request.method,
                    "endpoint": request.endpoint or request.path,
                    "status": str(response.status_code),
                },
            )
        if response.status_code >= 500:
            increment_counter(
                "http_errors_total",
                labels={
                    "method": request.method,
                    "endpoint": request.endpoint or request.path,
                    "status": str(response.status_code),
                },
            )
            logger.error("Request finished with error status %s", response.status_code)
        else:
            logger.info("Request finished", extra={"status_code": response.status_code})
        response.headers[config.REQUEST_ID_HEADER] = g.get("request_id", "")
        return response

    @app.teardown_appcontext
    def teardown_db(exception):
        close_db(exception)

    @app.route("/health", methods=["GET"])
    def health():
        bind = app.extensions["marketplace_engine"]
        components = {
            "database": check_database_health(bind),
            "settlement_tables": check_settlement_tables(bind),
        }
        overall = "UP" if all(c.get("status") == "UP" for c in components.values()) else "DEGRADED"
        status_code = 200 if overall == "UP" else 503
        return jsonify({
            "status": overall,
            "components": components
        }), status_code

    @app.route("/admin/metrics", methods=["GET"])
    def admin_metrics():
        return jsonify(get_metrics_snapshot())

    return app
