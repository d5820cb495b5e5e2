from fastapi import APIRouter, HTTPException, Request, status

from ..config import ConfigError, load_monitor_config
from ..schemas import HistoryOut, RowOut, SeriesOut
from ..services.catalog import build_catalog

router = APIRouter()

@router.get("/health")
def health():
    return {"status": "ok"}

@router.get("/series", response_model=list[SeriesOut])
def series(request: Request):
    monitor = request.app.state.monitor
    return [SeriesOut(key=s.key, name=s.name, group=s.group) for s in monitor.window.series]

@router.get("/history", response_model=HistoryOut)
def history(request: Request):
    snap = request.app.state.monitor.window.snapshot()
    return HistoryOut(
        generated_at=snap.generated_at,
        series=[SeriesOut(key=s.key, name=s.name, group=s.group) for s in snap.series],
        rows=[RowOut(ts=r.bucket, values=list(r.values)) for r in snap.rows],
    )

@router.post("/reload")
async def reload(request: Request):
    """Re-read config.yaml: series list, history length, display and retry settings.

    ``http_port`` is only read at startup.
    """
    settings = request.app.state.settings
    try:
        config = load_monitor_config(settings.config_path)
        catalog = build_catalog(config)
    except ConfigError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    monitor = request.app.state.monitor
    await monitor.reload(catalog)
    monitor.apply_config(config)
    if len(monitor.window):
        monitor.publish()
    return {
        "ok": True,
        "series": len(catalog),
        "oldest_history": monitor.window.capacity,
        "slow_threshold": monitor.renderer.slow_threshold,
        "show_rt": monitor.renderer.show_rt,
        "retry_count": monitor.retry_count,
        "retry_interval": monitor.retry_interval,
        "probe_interval": monitor.probe_interval,
    }
