import logging
from fastapi import FastAPI

from .config import Settings, load_monitor_config, settings as default_settings
from .middleware import access_log_middleware
from .routers import pages, public
from .services.catalog import build_catalog
from .services.datalog import DataLog
from .services.history import load_history
from .services.monitor import Monitor
from .services.render import SnapshotRenderer
from .services.rows import RowWindow

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)

def build_monitor(settings: Settings) -> Monitor:
    """Load config.yaml and wire the window, data log and renderer. ConfigError is fatal."""
    config = load_monitor_config(settings.config_path)
    catalog = build_catalog(config)
    window = RowWindow(catalog.series, capacity=config.oldest_history)
    renderer = SnapshotRenderer(
        settings.DATA_DIR,
        slow_threshold=config.slow_threshold,
        show_rt=config.show_rt,
        title=settings.APP_TITLE,
    )
    return Monitor(
        catalog,
        window,
        DataLog(settings.DATA_DIR),
        renderer,
        retry_count=config.retry_count,
        retry_interval=config.retry_interval,
        probe_interval=config.probe_interval,
    )

def create_app(settings: Settings = default_settings) -> FastAPI:
    app = FastAPI(title=settings.APP_TITLE, version=settings.APP_VERSION)
    app.state.settings = settings

    access_log_middleware(app)

    @app.on_event("startup")
    async def _start_monitor():
        log.info("base dir: %s", settings.DATA_DIR)
        monitor = build_monitor(settings)
        log.info("oldest history in minutes: %d", monitor.window.capacity)
        load_history(monitor.window, settings.DATA_DIR)
        if len(monitor.window):
            monitor.publish()
        try:
            monitor.datalog.rotate_if_needed()
        except OSError as e:
            log.error("open data log in %s: %s", settings.DATA_DIR, e)
        monitor.start()
        app.state.monitor = monitor

    @app.on_event("shutdown")
    async def _stop_monitor():
        monitor = getattr(app.state, "monitor", None)
        if monitor is not None:
            await monitor.stop()

    app.include_router(public.router)
    app.include_router(pages.router)
    return app

app = create_app()
